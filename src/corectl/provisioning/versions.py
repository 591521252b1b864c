"""Version gate run before any control-plane or cluster mutation."""
from __future__ import annotations

import re
from typing import Protocol

from packaging.version import InvalidVersion as _PackagingInvalidVersion
from packaging.version import Version

_SEMVER = re.compile(
    r"^v?(?P<core>(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*))"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


class InvalidVersion(ValueError):
    """Raised when a requested version is not a semantic version."""


class VersionNotPublished(LookupError):
    """Raised when a valid version is absent from the published catalog."""

    def __init__(self, version: str, latest: str | None = None) -> None:
        """Remember the rejected *version* and the newest published tag."""
        message = f"core_instance image tag {version} is not available"
        if latest:
            message += f" (latest published: {latest})"
        super().__init__(message)
        self.version = version
        self.latest = latest


class TagCatalog(Protocol):
    """Read-only catalog of published tags."""

    def match(self, tag: str) -> bool:
        """Return ``True`` when *tag* is published."""
        ...

    def all(self) -> list[str]:
        """Return every published tag."""
        ...


def normalize_version(raw: str) -> str:
    """Strip whitespace and ensure a leading ``v``."""
    text = raw.strip()
    if text and not text.startswith("v"):
        text = f"v{text}"
    return text


def parse_version(raw: str) -> Version:
    """Parse *raw* as ``MAJOR.MINOR.PATCH`` with optional suffixes."""
    match = _SEMVER.match(raw.strip())
    if match is None:
        raise InvalidVersion(f"invalid semantic version {raw!r}")
    try:
        return Version(match.group("core"))
    except _PackagingInvalidVersion as exc:  # pragma: no cover - regex already enforces shape
        raise InvalidVersion(f"invalid semantic version {raw!r}") from exc


def latest_tag(tags: list[str]) -> str | None:
    """Return the highest semantic-version tag in *tags*."""
    parsed: list[tuple[Version, str]] = []
    for tag in tags:
        try:
            parsed.append((parse_version(tag), tag))
        except InvalidVersion:
            continue
    if not parsed:
        return None
    parsed.sort()
    return parsed[-1][1]


class VersionResolver:
    """Confirm a requested version against a catalog of published tags."""

    def __init__(self, catalog: TagCatalog) -> None:
        """Bind the resolver to *catalog*."""
        self.catalog = catalog

    def resolve(self, raw: str | None) -> str | None:
        """Return the normalized, published tag for *raw*.

        An empty request returns ``None`` so the caller falls back to its
        default image tag without consulting the catalog.
        """
        if raw is None or not raw.strip():
            return None
        normalized = normalize_version(raw)
        parse_version(normalized)
        if not self.catalog.match(normalized):
            raise VersionNotPublished(normalized, latest_tag(self.catalog.all()))
        return normalized


__all__ = [
    "InvalidVersion",
    "TagCatalog",
    "VersionNotPublished",
    "VersionResolver",
    "latest_tag",
    "normalize_version",
    "parse_version",
]
