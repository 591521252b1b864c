"""Remote catalog of published operator image tags."""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

import requests

LOGGER = logging.getLogger(__name__)


class VersionCatalogError(RuntimeError):
    """Raised when the version index cannot be fetched or decoded."""


class VersionCatalog:
    """Read-only view of a JSON image-tag index.

    The index is either a JSON list of tags or an object carrying a ``tags``
    list. Tags are fetched once per instance; an optional cache file is
    consulted before the network and refreshed after a successful fetch.
    """

    def __init__(
        self,
        index_url: str,
        *,
        cache_path: Path | None = None,
        session: requests.Session | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        """Configure the catalog location and optional on-disk cache."""
        self.index_url = index_url
        self.cache_path = cache_path
        self.session = session or requests.Session()
        self.timeout = timeout
        self._tags: list[str] | None = None

    def all(self, *, refresh: bool = False) -> list[str]:
        """Return every published tag."""
        if self._tags is not None and not refresh:
            return list(self._tags)
        tags: list[str] | None = None
        if self.cache_path is not None and not refresh:
            tags = self._from_cache(self.cache_path)
        if tags is None:
            tags = self._from_index()
            if self.cache_path is not None:
                self._write_cache(self.cache_path, tags)
        self._tags = tags
        return list(tags)

    def match(self, tag: str) -> bool:
        """Return ``True`` when *tag* is published."""
        return tag in self.all()

    # ------------------------------------------------------------------
    def _from_cache(self, path: Path) -> list[str] | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            LOGGER.debug("ignoring unreadable version cache %s: %s", path, exc)
            return None
        try:
            return _extract_tags(payload)
        except VersionCatalogError as exc:
            LOGGER.debug("ignoring malformed version cache %s: %s", path, exc)
            return None

    def _from_index(self) -> list[str]:
        try:
            response = self.session.get(self.index_url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise VersionCatalogError(
                f"could not fetch version index {self.index_url}: {exc}"
            ) from exc
        except ValueError as exc:
            raise VersionCatalogError(
                f"could not decode version index {self.index_url}: {exc}"
            ) from exc
        return _extract_tags(payload)

    def _write_cache(self, path: Path, tags: list[str]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(tags, indent=2), encoding="utf-8")
        except OSError as exc:
            LOGGER.debug("could not write version cache %s: %s", path, exc)


def _extract_tags(payload: object) -> list[str]:
    if isinstance(payload, Mapping):
        payload = payload.get("tags")
    if not isinstance(payload, list):
        raise VersionCatalogError("version index must be a list of tags")
    return [str(item).strip() for item in payload if str(item).strip()]


__all__ = ["VersionCatalog", "VersionCatalogError"]
