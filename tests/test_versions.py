"""Coverage for the version gate."""
from __future__ import annotations

import pytest

from conftest import PUBLISHED_TAGS
from corectl.provisioning.versions import (
    InvalidVersion,
    VersionNotPublished,
    VersionResolver,
    latest_tag,
    normalize_version,
    parse_version,
)


def test_resolve_accepts_published_tag_with_or_without_prefix(catalog) -> None:
    """Both ``2.14.0`` and ``v2.14.0`` resolve to the published ``v2.14.0``."""
    resolver = VersionResolver(catalog)

    assert resolver.resolve("2.14.0") == "v2.14.0"
    assert resolver.resolve(" v2.14.0 ") == "v2.14.0"


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_resolve_empty_request_skips_catalog(catalog, raw: str | None) -> None:
    """An omitted version falls back to the caller's default."""
    resolver = VersionResolver(catalog)

    assert resolver.resolve(raw) is None
    assert catalog.lookups == 0


@pytest.mark.parametrize("raw", ["latest", "2.14", "v2.14.0.1", "02.1.0"])
def test_resolve_rejects_malformed_versions_before_lookup(catalog, raw: str) -> None:
    """Malformed versions never reach the catalog."""
    resolver = VersionResolver(catalog)

    with pytest.raises(InvalidVersion, match="invalid semantic version"):
        resolver.resolve(raw)
    assert catalog.lookups == 0


def test_resolve_rejects_unpublished_version(catalog) -> None:
    """Well formed but unpublished tags name the newest published one."""
    resolver = VersionResolver(catalog)

    with pytest.raises(VersionNotPublished) as excinfo:
        resolver.resolve("9.9.9")

    assert excinfo.value.version == "v9.9.9"
    assert excinfo.value.latest == "v2.15.1"
    assert "core_instance image tag v9.9.9 is not available" in str(excinfo.value)


def test_prerelease_and_build_suffixes_parse() -> None:
    """Suffixes are accepted; ordering uses the numeric core."""
    assert str(parse_version("v1.2.3-rc.1+build.5")) == "1.2.3"
    assert normalize_version("1.2.3-rc.1") == "v1.2.3-rc.1"


def test_latest_tag_ignores_unparseable_entries() -> None:
    """Garbage entries in the catalog do not break the newest-tag lookup."""
    assert latest_tag(["nightly", *PUBLISHED_TAGS, "v2.9.0"]) == "v2.15.1"
    assert latest_tag(["nightly"]) is None
