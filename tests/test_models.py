"""Tests for the label set shared by every provisioned object."""
from __future__ import annotations

import pytest

from corectl.provisioning.models import (
    LABEL_INSTANCE,
    LABEL_INSTANCE_ID,
    LABEL_VERSION,
    LabelSet,
    instance_selector,
    sanitize_label_value,
)


def _labels(**overrides: str) -> LabelSet:
    values = {
        "instance_id": "00000000-0000-4000-8000-000000000001",
        "instance_name": "demo",
        "project_id": "project-1",
        "version": "v2.15.1",
    }
    values.update(overrides)
    return LabelSet(**values)


def test_label_set_is_deterministic() -> None:
    """Equal inputs always render the same labels and selector."""
    first, second = _labels(), _labels()

    assert first.as_dict() == second.as_dict()
    assert first.selector() == second.selector()
    assert first.selector() == f"{LABEL_INSTANCE_ID}=00000000-0000-4000-8000-000000000001"
    assert first.as_dict()[LABEL_VERSION] == "v2.15.1"


def test_label_values_are_sanitized() -> None:
    """Invalid characters are replaced and empty values dropped."""
    labels = _labels(instance_name="my core!", project_id="---").as_dict()

    assert labels[LABEL_INSTANCE] == "my-core"
    assert "corectl_project_id" not in labels
    assert sanitize_label_value("x" * 80) == "x" * 63


def test_label_set_requires_instance_id() -> None:
    """Labels cannot be built before the instance is registered."""
    with pytest.raises(ValueError, match="core instance ID is required"):
        _labels(instance_id="  ")


def test_instance_selector_matches_label_set() -> None:
    """The free function and the method agree."""
    assert instance_selector("abc") == _labels(instance_id="abc").selector()
