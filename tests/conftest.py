"""Pytest configuration helpers and in-memory fakes for the test suite."""

from __future__ import annotations

import base64
import copy
import json
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from corectl.config import ImagesConfig
from corectl.providers.cloud import CloudError, CloudNotFoundError
from corectl.providers.kubernetes import (
    ClusterConflictError,
    ClusterError,
    ClusterInfo,
    ClusterNotFoundError,
    CoreOperatorNotFoundError,
    ResourceKind,
)
from corectl.provisioning import (
    ClusterResourceFactory,
    CoreInstanceRegistrar,
    DeploymentOptions,
    ProvisioningOrchestrator,
    VersionResolver,
)

PROJECT_ID = "proj-123"
PROJECT_TOKEN = (
    base64.urlsafe_b64encode(json.dumps({"ProjectID": PROJECT_ID}).encode()).decode().rstrip("=")
    + ".signature"
)
PUBLISHED_TAGS = ["v2.13.0", "v2.14.0", "v2.15.1"]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _matches(labels: Mapping[str, str], selector: str) -> bool:
    for clause in selector.split(","):
        key, _, value = clause.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster:
    """In-memory stand-in for :class:`corectl.providers.KubernetesProvider`."""

    def __init__(self, namespaces: list[str] | None = None, *, namespace: str = "default") -> None:
        self.namespace = namespace
        self.namespaces = list(namespaces or [namespace])
        self.objects: dict[tuple[ResourceKind, str | None, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, ResourceKind | None, str, str | None]] = []
        self.fail_create: dict[ResourceKind, Exception] = {}
        self.fail_delete: dict[ResourceKind, ClusterError] = {}
        self.fail_delete_named: dict[str, ClusterError] = {}
        self.fail_collection: dict[tuple[ResourceKind, str | None], ClusterError] = {}
        self.fail_list: dict[tuple[ResourceKind, str | None], ClusterError] = {}
        self.readiness: dict[str, list[tuple[int, int]]] = {}
        self.info = ClusterInfo(
            context="kind-test", namespace=namespace, version="v1.29.2", platform="linux/amd64"
        )
        self.on_create: Callable[[ResourceKind], None] | None = None
        self.operator: str | None = "latest"

    # helpers ----------------------------------------------------------
    def add(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Seed an object directly, bypassing call recording."""
        ns = None if kind.cluster_scoped else (namespace or self.namespace)
        if ns is not None and ns not in self.namespaces:
            self.namespaces.append(ns)
        self.objects[(kind, ns, name)] = {
            "metadata": {"name": name, "namespace": ns, "labels": dict(labels or {})}
        }

    def names(self, kind: ResourceKind) -> list[str]:
        """Return names of stored objects of *kind*."""
        return sorted(name for (k, _, name) in self.objects if k is kind)

    def verbs(self, verb: str) -> list[tuple[ResourceKind | None, str, str | None]]:
        """Return recorded calls for *verb*."""
        return [(kind, target, ns) for (v, kind, target, ns) in self.calls if v == verb]

    def _key(
        self, kind: ResourceKind, name: str, namespace: str | None
    ) -> tuple[ResourceKind, str | None, str]:
        ns = None if kind.cluster_scoped else (namespace or self.namespace)
        return (kind, ns, name)

    # provider surface -------------------------------------------------
    def create(
        self,
        kind: ResourceKind,
        manifest: Mapping[str, Any],
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        name = str(manifest["metadata"]["name"])
        self.calls.append(("create", kind, name, namespace))
        if self.on_create is not None:
            self.on_create(kind)
        if kind in self.fail_create:
            raise self.fail_create[kind]
        key = self._key(kind, name, namespace)
        if key in self.objects:
            raise ClusterConflictError(f"create {kind.value} {name}: AlreadyExists (HTTP 409)")
        if key[1] is not None and key[1] not in self.namespaces:
            self.namespaces.append(key[1])
        stored = copy.deepcopy(dict(manifest))
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def read(self, kind: ResourceKind, name: str, *, namespace: str | None = None) -> dict[str, Any]:
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ClusterNotFoundError(f"read {kind.value} {name}: NotFound (HTTP 404)")
        return copy.deepcopy(self.objects[key])

    def exists(self, kind: ResourceKind, name: str, *, namespace: str | None = None) -> bool:
        self.calls.append(("exists", kind, name, namespace))
        return self._key(kind, name, namespace) in self.objects

    def replace(
        self,
        kind: ResourceKind,
        name: str,
        manifest: Mapping[str, Any],
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(("replace", kind, name, namespace))
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ClusterNotFoundError(f"replace {kind.value} {name}: NotFound (HTTP 404)")
        self.objects[key] = copy.deepcopy(dict(manifest))
        return copy.deepcopy(self.objects[key])

    def delete(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        self.calls.append(("delete", kind, name, namespace))
        if kind in self.fail_delete:
            raise self.fail_delete[kind]
        if name in self.fail_delete_named:
            raise self.fail_delete_named[name]
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise ClusterNotFoundError(f"delete {kind.value} {name}: NotFound (HTTP 404)")
        del self.objects[key]

    def list(
        self,
        kind: ResourceKind,
        selector: str,
        *,
        namespace: str | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list", kind, selector, namespace))
        failure = self.fail_list.get((kind, namespace))
        if failure is not None:
            raise failure
        ns = None if kind.cluster_scoped else (namespace or self.namespace)
        return [
            copy.deepcopy(obj)
            for (k, obj_ns, _), obj in sorted(self.objects.items(), key=lambda item: item[0][2])
            if k is kind
            and obj_ns == ns
            and _matches(obj.get("metadata", {}).get("labels") or {}, selector)
        ]

    def delete_collection(
        self,
        kind: ResourceKind,
        selector: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        self.calls.append(("delete_collection", kind, selector, namespace))
        failure = self.fail_collection.get((kind, namespace))
        if failure is not None:
            raise failure
        ns = None if kind.cluster_scoped else (namespace or self.namespace)
        doomed = [
            key
            for key, obj in self.objects.items()
            if key[0] is kind
            and key[1] == ns
            and _matches(obj.get("metadata", {}).get("labels") or {}, selector)
        ]
        for key in doomed:
            del self.objects[key]

    def list_namespaces(self) -> list[str]:
        return list(self.namespaces)

    def namespace_exists(self, name: str) -> bool:
        return name in self.namespaces

    def create_namespace(self, name: str) -> None:
        self.calls.append(("create", ResourceKind.NAMESPACE, name, None))
        self.namespaces.append(name)

    def deployment_readiness(self, name: str, *, namespace: str | None = None) -> tuple[int, int]:
        states = self.readiness.get(name)
        if not states:
            raise ClusterNotFoundError(f"read deployment {name} status: NotFound (HTTP 404)")
        if len(states) > 1:
            return states.pop(0)
        return states[0]

    def cluster_info(self) -> ClusterInfo:
        return self.info

    def operator_version(self) -> str:
        if self.operator is None:
            raise CoreOperatorNotFoundError(
                "no deployment matching control-plane=controller-manager found"
            )
        return self.operator


class FakeCloud:
    """In-memory stand-in for :class:`corectl.providers.CloudClient`."""

    def __init__(self, private_key_pem: bytes) -> None:
        self.private_key = base64.b64encode(private_key_pem).decode("ascii")
        self.instances: dict[str, dict[str, Any]] = {}
        self.environments: list[dict[str, Any]] = [
            {"id": "env-default", "name": "default"},
            {"id": "env-prod", "name": "production"},
        ]
        self.calls: list[tuple[str, str]] = []
        self.fail_create: CloudError | None = None
        self.fail_delete: CloudError | None = None
        self._counter = 0

    def create_core_instance(self, project_id: str, payload: Mapping[str, object]) -> dict[str, Any]:
        self.calls.append(("create", str(payload.get("name", ""))))
        if self.fail_create is not None:
            raise self.fail_create
        self._counter += 1
        instance_id = f"00000000-0000-4000-8000-{self._counter:012d}"
        environment_id = str(payload.get("environmentID") or "env-default")
        environment_name = next(
            (env["name"] for env in self.environments if env["id"] == environment_id), "default"
        )
        record = {
            "id": instance_id,
            "name": payload.get("name") or f"generated-{self._counter}",
            "environmentID": environment_id,
            "environmentName": environment_name,
            "version": payload.get("version"),
            "tags": payload.get("tags") or [],
            "metadata": payload.get("metadata") or {},
            "payload": dict(payload),
        }
        self.instances[instance_id] = record
        return {**record, "privateRSAKey": self.private_key}

    def update_core_instance(self, instance_id: str, payload: Mapping[str, object]) -> None:
        self.calls.append(("update", instance_id))
        if instance_id not in self.instances:
            raise CloudNotFoundError(f"core instance {instance_id} not found", status=404)
        self.instances[instance_id].setdefault("updates", []).append(dict(payload))

    def delete_core_instance(self, instance_id: str) -> None:
        self.calls.append(("delete", instance_id))
        if self.fail_delete is not None:
            raise self.fail_delete
        if instance_id not in self.instances:
            raise CloudNotFoundError(f"core instance {instance_id} not found", status=404)
        del self.instances[instance_id]

    def get_core_instance(self, instance_id: str) -> dict[str, Any]:
        if instance_id not in self.instances:
            raise CloudNotFoundError(f"core instance {instance_id} not found", status=404)
        return dict(self.instances[instance_id])

    def list_core_instances(
        self,
        project_id: str,
        *,
        name: str | None = None,
        environment_id: str | None = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list", name or ""))
        return [
            dict(item)
            for item in self.instances.values()
            if (name is None or item["name"] == name)
            and (environment_id is None or item["environmentID"] == environment_id)
        ]

    def list_environments(self, project_id: str, *, name: str | None = None) -> list[dict[str, Any]]:
        return [dict(env) for env in self.environments if name is None or env["name"] == name]


class FakeCatalog:
    """Fixed catalog of published tags."""

    def __init__(self, tags: list[str] | None = None) -> None:
        self.tags = list(PUBLISHED_TAGS if tags is None else tags)
        self.lookups = 0

    def match(self, tag: str) -> bool:
        self.lookups += 1
        return tag in self.tags

    def all(self) -> list[str]:
        return list(self.tags)


@pytest.fixture(scope="session")
def private_key_pem() -> bytes:
    """An unencrypted RSA private key in PEM form."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture()
def cluster() -> FakeCluster:
    """An empty fake cluster with a ``default`` namespace."""
    return FakeCluster()


@pytest.fixture()
def cloud(private_key_pem: bytes) -> FakeCloud:
    """A fake control-plane handing out *private_key_pem*."""
    return FakeCloud(private_key_pem)


@pytest.fixture()
def catalog() -> FakeCatalog:
    """A catalog publishing :data:`PUBLISHED_TAGS`."""
    return FakeCatalog()


@pytest.fixture()
def deployment_options() -> DeploymentOptions:
    """Default sync deployment settings."""
    return DeploymentOptions(cloud_url="https://cloud.example.test", token=PROJECT_TOKEN)


@pytest.fixture()
def make_orchestrator(
    cluster: FakeCluster,
    cloud: FakeCloud,
    catalog: FakeCatalog,
) -> Callable[..., ProvisioningOrchestrator]:
    """Return a builder wiring the fakes into an orchestrator."""

    def _build(*, dry_run: bool = False, **kwargs: Any) -> ProvisioningOrchestrator:
        target = None if dry_run else cluster
        registrar = CoreInstanceRegistrar(cloud, project_id=PROJECT_ID, cluster=target)
        factory = ClusterResourceFactory(
            target, namespace=cluster.namespace, project_id=PROJECT_ID, dry_run=dry_run
        )
        return ProvisioningOrchestrator(
            resolver=VersionResolver(catalog),
            registrar=registrar,
            factory=factory,
            cluster=target,
            images=ImagesConfig(to_cloud="example/to-cloud", from_cloud="example/from-cloud"),
            default_tag="v2.14.0",
            **kwargs,
        )

    return _build


@pytest.fixture()
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Environment isolating the CLI from the user's config and logs."""
    return {
        "CORECTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "CORECTL_LOGS_DIR": str(tmp_path / "logs"),
        "CORECTL_CLOUD__TOKEN": PROJECT_TOKEN,
    }


@pytest.fixture()
def cluster_factory() -> type[FakeCluster]:
    """The fake cluster class, for tests that seed their own namespaces."""
    return FakeCluster
