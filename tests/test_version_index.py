"""Coverage for the remote image-tag catalog and its cache."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

from corectl.providers.version_index import VersionCatalog, VersionCatalogError

INDEX_URL = "https://index.example.test/operator.index.json"


class _Response:
    def __init__(self, payload: object, *, status: int = 200) -> None:
        self.payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self) -> object:
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class _Session:
    def __init__(self, response: _Response) -> None:
        self.response = response
        self.requests: list[tuple[str, float | None]] = []

    def get(self, url: str, *, timeout: float | None = None) -> _Response:
        self.requests.append((url, timeout))
        return self.response


def test_list_index_is_fetched_once(tmp_path: Path) -> None:
    """A JSON list is accepted and the result is memoised per catalog."""
    session = _Session(_Response(["v2.14.0", " v2.15.1 ", ""]))
    catalog = VersionCatalog(INDEX_URL, session=session, timeout=5)  # type: ignore[arg-type]

    assert catalog.all() == ["v2.14.0", "v2.15.1"]
    assert catalog.match("v2.15.1")
    assert not catalog.match("v9.9.9")
    assert session.requests == [(INDEX_URL, 5)]


def test_object_index_with_tags_key(tmp_path: Path) -> None:
    """An object carrying a ``tags`` list is accepted."""
    session = _Session(_Response({"tags": ["v2.13.0"], "generated": "today"}))
    catalog = VersionCatalog(INDEX_URL, session=session)  # type: ignore[arg-type]

    assert catalog.all() == ["v2.13.0"]


def test_cache_is_preferred_over_the_network(tmp_path: Path) -> None:
    """A readable cache file short-circuits the HTTP request."""
    cache = tmp_path / "cache" / "index.json"
    cache.parent.mkdir()
    cache.write_text(json.dumps(["v2.10.0"]), encoding="utf-8")
    session = _Session(_Response(["v2.14.0"]))

    catalog = VersionCatalog(INDEX_URL, cache_path=cache, session=session)  # type: ignore[arg-type]

    assert catalog.all() == ["v2.10.0"]
    assert session.requests == []


def test_refresh_bypasses_and_rewrites_cache(tmp_path: Path) -> None:
    """``refresh=True`` fetches the index and stores it for later runs."""
    cache = tmp_path / "index.json"
    cache.write_text(json.dumps(["v2.10.0"]), encoding="utf-8")
    session = _Session(_Response(["v2.14.0", "v2.15.1"]))
    catalog = VersionCatalog(INDEX_URL, cache_path=cache, session=session)  # type: ignore[arg-type]

    assert catalog.all(refresh=True) == ["v2.14.0", "v2.15.1"]
    assert json.loads(cache.read_text(encoding="utf-8")) == ["v2.14.0", "v2.15.1"]


def test_unreadable_cache_falls_back_to_index(tmp_path: Path) -> None:
    """A corrupt cache is ignored and replaced by the fetched index."""
    cache = tmp_path / "index.json"
    cache.write_text("{not-json", encoding="utf-8")
    session = _Session(_Response(["v2.14.0"]))
    catalog = VersionCatalog(INDEX_URL, cache_path=cache, session=session)  # type: ignore[arg-type]

    assert catalog.all() == ["v2.14.0"]
    assert len(session.requests) == 1
    assert json.loads(cache.read_text(encoding="utf-8")) == ["v2.14.0"]


def test_http_failure_raises_catalog_error() -> None:
    """HTTP errors surface as VersionCatalogError naming the index."""
    catalog = VersionCatalog(INDEX_URL, session=_Session(_Response([], status=503)))  # type: ignore[arg-type]

    with pytest.raises(VersionCatalogError, match="could not fetch version index"):
        catalog.all()


def test_undecodable_or_malformed_index_raises() -> None:
    """Bodies that are not JSON, or not a tag list, are rejected."""
    broken = VersionCatalog(INDEX_URL, session=_Session(_Response(ValueError("bad json"))))  # type: ignore[arg-type]
    with pytest.raises(VersionCatalogError, match="could not decode version index"):
        broken.all()

    wrong_shape = VersionCatalog(INDEX_URL, session=_Session(_Response({"versions": []})))  # type: ignore[arg-type]
    with pytest.raises(VersionCatalogError, match="must be a list of tags"):
        wrong_shape.all()
