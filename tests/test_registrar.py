"""Coverage for the control-plane registrar."""
from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from conftest import PROJECT_ID
from corectl.providers.cloud import CloudError, CloudNotFoundError
from corectl.provisioning.models import CoreInstanceParams, CoreInstanceUpdate
from corectl.provisioning.registrar import CoreInstanceRegistrar

if TYPE_CHECKING:
    from conftest import FakeCloud, FakeCluster


@pytest.fixture()
def registrar(cloud: FakeCloud, cluster: FakeCluster) -> CoreInstanceRegistrar:
    """A registrar wired to the fake control-plane and cluster."""
    return CoreInstanceRegistrar(cloud, project_id=PROJECT_ID, cluster=cluster)


def test_create_returns_instance_with_decoded_key(
    registrar: CoreInstanceRegistrar,
    private_key_pem: bytes,
) -> None:
    """The returned instance carries its ID, environment and PEM key."""
    instance = registrar.create(
        CoreInstanceParams(name="demo", environment_id="env-prod", tags=("edge",))
    )

    assert instance.id == "00000000-0000-4000-8000-000000000001"
    assert instance.name == "demo"
    assert instance.environment_name == "production"
    assert instance.tags == ("edge",)
    assert instance.private_key == private_key_pem


def test_create_payload_carries_cluster_metadata(
    registrar: CoreInstanceRegistrar,
    cloud: FakeCloud,
) -> None:
    """Metadata collected from the cluster is sent with the registration."""
    metadata = registrar.fetch_cluster_metadata()
    instance = registrar.create(CoreInstanceParams(name="demo", metadata=metadata, version="v2.14.0"))

    payload = cloud.instances[instance.id]["payload"]
    assert payload["metadata"] == {
        "k8s.namespace": "default",
        "k8s.cluster_version": "v1.29.2",
        "k8s.cluster_platform": "linux/amd64",
        "k8s.cluster_name": "kind-test",
    }
    assert payload["version"] == "v2.14.0"
    assert payload["addHealthCheckPipeline"] is True


def test_undecodable_response_deletes_the_record(
    registrar: CoreInstanceRegistrar,
    cloud: FakeCloud,
) -> None:
    """A record whose key cannot be decoded is removed again."""
    cloud.private_key = "%%%not-base64%%%"

    with pytest.raises(CloudError, match="invalid core instance response"):
        registrar.create(CoreInstanceParams(name="demo"))

    assert cloud.instances == {}
    assert cloud.calls[-1][0] == "delete"



def test_undecodable_response_keeps_the_decode_error_primary(
    registrar: CoreInstanceRegistrar,
    cloud: FakeCloud,
) -> None:
    """A failed cleanup is appended to, not substituted for, the decode error."""
    cloud.private_key = "%%%not-base64%%%"
    cloud.fail_delete = CloudError("internal error", status=500)

    with pytest.raises(CloudError, match="invalid core instance response") as excinfo:
        registrar.create(CoreInstanceParams(name="demo"))

    message = str(excinfo.value)
    assert "could not be deleted: internal error" in message
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert len(cloud.instances) == 1


def test_update_sends_only_changed_fields(
    registrar: CoreInstanceRegistrar,
    cloud: FakeCloud,
) -> None:
    """Unset fields are omitted from the update body."""
    instance = registrar.create(CoreInstanceParams(name="demo"))

    registrar.update(instance.id, CoreInstanceUpdate(version="v2.15.1", cluster_logging=False))

    assert cloud.instances[instance.id]["updates"] == [
        {"version": "v2.15.1", "clusterLogging": False}
    ]


def test_delete_is_idempotent(registrar: CoreInstanceRegistrar) -> None:
    """Deleting a missing record reports ``False`` instead of raising."""
    instance = registrar.create(CoreInstanceParams(name="demo"))

    assert registrar.delete(instance.id) is True
    assert registrar.delete(instance.id) is False


def test_delete_propagates_other_errors(
    registrar: CoreInstanceRegistrar,
    cloud: FakeCloud,
) -> None:
    """Errors other than not-found are surfaced."""
    cloud.fail_delete = CloudError("internal error", status=500)

    with pytest.raises(CloudError, match="internal error"):
        registrar.delete("00000000-0000-4000-8000-000000000009")


def test_resolve_environment_id(registrar: CoreInstanceRegistrar) -> None:
    """Environment names resolve to IDs; unknown names fail."""
    assert registrar.resolve_environment_id("production") == "env-prod"
    with pytest.raises(CloudNotFoundError, match="could not find environment 'staging'"):
        registrar.resolve_environment_id("staging")


def test_resolve_instance_id_by_name_or_uuid(registrar: CoreInstanceRegistrar) -> None:
    """Names resolve through the control-plane; bare UUIDs pass through."""
    instance = registrar.create(CoreInstanceParams(name="demo"))
    stray = "11111111-2222-4333-8444-555555555555"

    assert registrar.resolve_instance_id("demo") == instance.id
    assert registrar.resolve_instance_id(stray) == stray
    with pytest.raises(CloudNotFoundError, match="could not find core instance 'ghost'"):
        registrar.resolve_instance_id("ghost")


def test_resolve_instance_id_rejects_ambiguous_names(
    registrar: CoreInstanceRegistrar,
) -> None:
    """Two records sharing a name across environments require the ID."""
    registrar.create(CoreInstanceParams(name="demo", environment_id="env-default"))
    registrar.create(CoreInstanceParams(name="demo", environment_id="env-prod"))

    with pytest.raises(CloudError, match="ambiguous core instance name"):
        registrar.resolve_instance_id("demo")
    assert registrar.resolve_instance_id("demo", environment_id="env-prod").endswith("2")


def test_metadata_requires_a_cluster(cloud: FakeCloud) -> None:
    """Dry-run registrars have no cluster to describe."""
    registrar = CoreInstanceRegistrar(cloud, project_id=PROJECT_ID)

    with pytest.raises(ValueError, match="cluster is required"):
        registrar.fetch_cluster_metadata()
