"""Builders for the Kubernetes objects that make up a core instance.

Each ``create_*`` call renders a manifest, applies the instance's
:class:`~corectl.provisioning.models.LabelSet` and, unless the factory runs in
dry-run mode, submits it to the cluster. The factory never undoes its own
work; the caller records every returned descriptor in a rollback ledger.

Creation order is a hard dependency chain::

    secret -> cluster role -> service account -> cluster role binding -> deployment

The binding references both the role and the account, and the deployment's
pods run under the account.
"""
from __future__ import annotations

import base64
import re
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .. import __version__
from ..providers.kubernetes import ClusterNotFoundError, ResourceKind
from .models import (
    CoreInstance,
    CreatedResource,
    DeploymentOptions,
    LabelSet,
    ResourceDescriptor,
    SyncImages,
)

NAME_PREFIX = "corectl"
DEFAULT_ENVIRONMENT = "default"
PRIVATE_KEY_FIELD = "private-key"
ENV_TLS_VERIFY = "CORE_TLS_VERIFY"
ENV_SKIP_SERVICE_CREATION = "CORE_INSTANCE_SKIP_SERVICE_CREATION"
_MAX_NAME = 63
_NAME_INVALID = re.compile(r"[^a-z0-9-]+")

CLUSTER_ROLE_API_GROUPS = ["", "apps", "batch", "policy", "core.calyptia.com"]
CLUSTER_ROLE_RESOURCES = [
    "namespaces",
    "deployments",
    "daemonsets",
    "replicasets",
    "pods",
    "services",
    "configmaps",
    "deployments/scale",
    "secrets",
    "nodes/proxy",
    "nodes",
    "jobs",
    "podsecuritypolicies",
    "pipelines",
    "pipelines/finalizers",
    "pipelines/status",
]
CLUSTER_ROLE_VERBS = [
    "get",
    "list",
    "create",
    "delete",
    "patch",
    "update",
    "watch",
    "deletecollection",
    "use",
]


class InvalidPrivateKey(ValueError):
    """Raised when the control-plane key is not a usable RSA private key."""


class ClusterWriter(Protocol):
    """The slice of the cluster provider the factory needs."""

    def create(
        self,
        kind: ResourceKind,
        manifest: Mapping[str, Any],
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Create *manifest*."""
        ...

    def list(
        self,
        kind: ResourceKind,
        selector: str,
        *,
        namespace: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of *kind* matching *selector*."""
        ...

    def replace(
        self,
        kind: ResourceKind,
        name: str,
        manifest: Mapping[str, Any],
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Replace object *name*."""
        ...

    def namespace_exists(self, name: str) -> bool:
        """Return ``True`` when *name* exists."""
        ...

    def create_namespace(self, name: str) -> None:
        """Create namespace *name*."""
        ...


def _dns_name(value: str) -> str:
    cleaned = _NAME_INVALID.sub("-", value.lower())
    cleaned = re.sub(r"-{2,}", "-", cleaned)
    return cleaned[:_MAX_NAME].strip("-")


def object_name(instance_name: str, environment_name: str | None, kind: ResourceKind) -> str:
    """Return the deterministic object name for *kind* of an instance."""
    environment = environment_name or DEFAULT_ENVIRONMENT
    name = f"{instance_name}-{environment}-{kind.value}"
    if not name.startswith(NAME_PREFIX):
        name = f"{NAME_PREFIX}-{name}"
    return _dns_name(name)


def deployment_name(instance_name: str) -> str:
    """Return the name of the sync deployment of an instance."""
    return _dns_name(f"{instance_name}-sync")


def validate_private_key(pem: bytes) -> None:
    """Ensure *pem* holds an unencrypted RSA private key."""
    if not pem:
        raise InvalidPrivateKey("control-plane returned an empty private key")
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise InvalidPrivateKey(f"invalid private key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidPrivateKey("private key is not an RSA key")


def parse_annotations(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` into a mapping."""
    annotations: dict[str, str] = {}
    if not raw:
        return annotations
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"invalid annotation {item!r}: expected key=value")
        annotations[key.strip()] = value.strip()
    return annotations


def parse_tolerations(raw: str | None) -> list[dict[str, object]]:
    """Parse ``key=Operator:value:Effect[:seconds]`` entries separated by commas."""
    tolerations: list[dict[str, object]] = []
    if not raw:
        return tolerations
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, spec = item.partition("=")
        parts = spec.split(":")
        if not sep or not key.strip() or len(parts) not in (3, 4):
            raise ValueError(
                f"invalid toleration {item!r}: expected key=Operator:value:Effect[:seconds]"
            )
        operator, value, effect = (part.strip() for part in parts[:3])
        if operator not in {"Equal", "Exists"}:
            raise ValueError(f"invalid toleration operator {operator!r}: use Equal or Exists")
        toleration: dict[str, object] = {"key": key.strip(), "operator": operator}
        if value:
            toleration["value"] = value
        if effect:
            toleration["effect"] = effect
        if len(parts) == 4 and parts[3].strip():
            try:
                toleration["tolerationSeconds"] = int(parts[3])
            except ValueError as exc:
                raise ValueError(f"invalid toleration seconds in {item!r}") from exc
        tolerations.append(toleration)
    return tolerations


class ClusterResourceFactory:
    """Render and create the cluster objects of a core instance."""

    def __init__(
        self,
        cluster: ClusterWriter | None,
        *,
        namespace: str,
        project_id: str,
        version: str = __version__,
        dry_run: bool = False,
    ) -> None:
        """Bind the factory to *cluster* and a target *namespace*."""
        if cluster is None and not dry_run:
            raise ValueError("a cluster provider is required outside dry-run mode")
        self.cluster = cluster
        self.namespace = namespace
        self.project_id = project_id
        self.version = version
        self.dry_run = dry_run

    def labels_for(self, instance: CoreInstance) -> LabelSet:
        """Return the label set applied to every object of *instance*."""
        return LabelSet.for_instance(instance, project_id=self.project_id, version=self.version)

    def planned_descriptors(
        self,
        instance_name: str,
        environment_name: str | None,
    ) -> list[ResourceDescriptor]:
        """Return the descriptors a run for *instance_name* would create, in order."""
        return [
            ResourceDescriptor(
                object_name(instance_name, environment_name, ResourceKind.SECRET),
                self.namespace,
                ResourceKind.SECRET,
            ),
            ResourceDescriptor(
                object_name(instance_name, environment_name, ResourceKind.CLUSTER_ROLE),
                None,
                ResourceKind.CLUSTER_ROLE,
            ),
            ResourceDescriptor(
                object_name(instance_name, environment_name, ResourceKind.SERVICE_ACCOUNT),
                self.namespace,
                ResourceKind.SERVICE_ACCOUNT,
            ),
            ResourceDescriptor(
                object_name(instance_name, environment_name, ResourceKind.CLUSTER_ROLE_BINDING),
                None,
                ResourceKind.CLUSTER_ROLE_BINDING,
            ),
            ResourceDescriptor(
                deployment_name(instance_name),
                self.namespace,
                ResourceKind.DEPLOYMENT,
            ),
        ]

    def ensure_namespace(self) -> bool:
        """Create the target namespace when missing; return ``True`` if created."""
        if self.dry_run or self.cluster is None:
            return False
        if self.cluster.namespace_exists(self.namespace):
            return False
        self.cluster.create_namespace(self.namespace)
        return True

    # ------------------------------------------------------------------
    def create_secret(self, instance: CoreInstance) -> CreatedResource:
        """Store the instance's RSA private key in a secret."""
        if not self.dry_run:
            validate_private_key(instance.private_key)
        manifest = self._base_manifest(
            ResourceKind.SECRET,
            object_name(instance.name, instance.environment_name, ResourceKind.SECRET),
            instance,
        )
        manifest["type"] = "Opaque"
        manifest["data"] = {
            PRIVATE_KEY_FIELD: base64.b64encode(instance.private_key).decode("ascii"),
        }
        return self._submit(ResourceKind.SECRET, manifest)

    def create_cluster_role(self, instance: CoreInstance) -> CreatedResource:
        """Create the cluster role granting the operator its permissions."""
        manifest = self._base_manifest(
            ResourceKind.CLUSTER_ROLE,
            object_name(instance.name, instance.environment_name, ResourceKind.CLUSTER_ROLE),
            instance,
        )
        manifest["rules"] = [
            {
                "apiGroups": list(CLUSTER_ROLE_API_GROUPS),
                "resources": list(CLUSTER_ROLE_RESOURCES),
                "verbs": list(CLUSTER_ROLE_VERBS),
            }
        ]
        return self._submit(ResourceKind.CLUSTER_ROLE, manifest)

    def create_service_account(self, instance: CoreInstance) -> CreatedResource:
        """Create the service account the sync pods run as."""
        manifest = self._base_manifest(
            ResourceKind.SERVICE_ACCOUNT,
            object_name(instance.name, instance.environment_name, ResourceKind.SERVICE_ACCOUNT),
            instance,
        )
        return self._submit(ResourceKind.SERVICE_ACCOUNT, manifest)

    def create_cluster_role_binding(
        self,
        instance: CoreInstance,
        role: CreatedResource,
        account: CreatedResource,
    ) -> CreatedResource:
        """Bind *role* to *account*."""
        manifest = self._base_manifest(
            ResourceKind.CLUSTER_ROLE_BINDING,
            object_name(
                instance.name, instance.environment_name, ResourceKind.CLUSTER_ROLE_BINDING
            ),
            instance,
        )
        manifest["roleRef"] = {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": role.descriptor.name,
        }
        manifest["subjects"] = [
            {
                "kind": "ServiceAccount",
                "name": account.descriptor.name,
                "namespace": account.descriptor.namespace or self.namespace,
            }
        ]
        return self._submit(ResourceKind.CLUSTER_ROLE_BINDING, manifest)

    def create_deployment(
        self,
        instance: CoreInstance,
        account: CreatedResource,
        images: SyncImages,
        options: DeploymentOptions,
    ) -> CreatedResource:
        """Create the sync deployment running under *account*."""
        labels = self.labels_for(instance).as_dict()
        manifest = self._base_manifest(
            ResourceKind.DEPLOYMENT,
            deployment_name(instance.name),
            instance,
        )
        env = self._sync_env(instance, options)
        containers = [
            self._sync_container(f"{instance.name}-sync-from-cloud", images.from_cloud, env, options),
            self._sync_container(f"{instance.name}-sync-to-cloud", images.to_cloud, env, options),
        ]
        pod_metadata: dict[str, Any] = {"labels": dict(labels)}
        if options.annotations:
            pod_metadata["annotations"] = dict(options.annotations)
        pod_spec: dict[str, Any] = {
            "serviceAccountName": account.descriptor.name,
            "automountServiceAccountToken": True,
            "containers": containers,
        }
        if options.tolerations:
            pod_spec["tolerations"] = [dict(item) for item in options.tolerations]
        manifest["spec"] = {
            "replicas": 1,
            "selector": {"matchLabels": dict(labels)},
            "template": {"metadata": pod_metadata, "spec": pod_spec},
        }
        return self._submit(ResourceKind.DEPLOYMENT, manifest)

    def update_deployment(
        self,
        selector: str,
        images: SyncImages,
        options: DeploymentOptions,
    ) -> CreatedResource:
        """Point the sync deployment matching *selector* at new images and settings."""
        if self.cluster is None:
            raise ValueError("a cluster provider is required to update deployments")
        deployments = self.cluster.list(
            ResourceKind.DEPLOYMENT, selector, namespace=self.namespace
        )
        if not deployments:
            raise ClusterNotFoundError(
                f"no deployment found with label {selector} in namespace {self.namespace}"
            )
        manifest = deployments[0]
        name = str(manifest["metadata"]["name"])
        containers = manifest.get("spec", {}).get("template", {}).get("spec", {}).get(
            "containers", []
        )
        if not containers:
            raise ClusterNotFoundError(f"no container found in deployment {name}")
        overrides = self._setting_env(options, include_metrics=False)
        for container in containers:
            container_name = str(container.get("name", ""))
            if container_name.endswith("-sync-to-cloud"):
                container["image"] = images.to_cloud
            elif container_name.endswith("-sync-from-cloud"):
                container["image"] = images.from_cloud
            container["env"] = _merge_env(container.get("env") or [], overrides)
        stored = self.cluster.replace(
            ResourceKind.DEPLOYMENT, name, manifest, namespace=self.namespace
        )
        return CreatedResource(
            ResourceDescriptor(name, self.namespace, ResourceKind.DEPLOYMENT), stored
        )

    # ------------------------------------------------------------------
    def _base_manifest(
        self,
        kind: ResourceKind,
        name: str,
        instance: CoreInstance,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": name, "labels": self.labels_for(instance).as_dict()}
        if not kind.cluster_scoped:
            metadata["namespace"] = self.namespace
        return {"apiVersion": kind.api_version, "kind": kind.api_kind, "metadata": metadata}

    def _submit(self, kind: ResourceKind, manifest: dict[str, Any]) -> CreatedResource:
        namespace = None if kind.cluster_scoped else self.namespace
        descriptor = ResourceDescriptor(manifest["metadata"]["name"], namespace, kind)
        if self.dry_run or self.cluster is None:
            return CreatedResource(descriptor, manifest)
        stored = self.cluster.create(kind, manifest, namespace=namespace)
        return CreatedResource(descriptor, stored or manifest)

    def _sync_env(
        self,
        instance: CoreInstance,
        options: DeploymentOptions,
    ) -> list[dict[str, str]]:
        env = [
            {"name": "CORE_INSTANCE", "value": instance.name},
            {"name": "NAMESPACE", "value": self.namespace},
            {"name": "CLOUD_URL", "value": options.cloud_url},
            {"name": "TOKEN", "value": options.token},
        ]
        return _merge_env(env, self._setting_env(options))

    def _setting_env(
        self,
        options: DeploymentOptions,
        *,
        include_metrics: bool = True,
    ) -> list[dict[str, str]]:
        env = [
            {"name": ENV_TLS_VERIFY, "value": "false" if options.no_tls_verify else "true"},
            {
                "name": ENV_SKIP_SERVICE_CREATION,
                "value": "true" if options.skip_service_creation else "false",
            },
        ]
        if include_metrics:
            env.append({"name": "METRICS", "value": "true" if options.metrics else "false"})
        if include_metrics and options.metrics:
            env.append({"name": "METRICS_PORT", "value": str(options.metrics_port)})
        for name, value in (
            ("CLOUD_PROXY", options.cloud_proxy),
            ("HTTP_PROXY", options.http_proxy),
            ("HTTPS_PROXY", options.https_proxy),
            ("NO_PROXY", options.no_proxy),
        ):
            if value:
                env.append({"name": name, "value": value})
        return env

    def _sync_container(
        self,
        name: str,
        image: str,
        env: Sequence[Mapping[str, str]],
        options: DeploymentOptions,
    ) -> dict[str, Any]:
        container: dict[str, Any] = {
            "name": name,
            "image": image,
            "imagePullPolicy": "Always",
            "env": [dict(item) for item in env],
            "resources": {"limits": {"memory": options.memory_limit}},
        }
        if options.metrics and name.endswith("-sync-to-cloud"):
            container["ports"] = [
                {"name": "metrics", "containerPort": options.metrics_port, "protocol": "TCP"}
            ]
        return container


def _merge_env(
    current: Sequence[Mapping[str, Any]],
    overrides: Sequence[Mapping[str, str]],
) -> list[dict[str, Any]]:
    merged = [dict(item) for item in current]
    index = {str(item.get("name")): position for position, item in enumerate(merged)}
    for item in overrides:
        name = item["name"]
        if name in index:
            merged[index[name]] = dict(item)
        else:
            index[name] = len(merged)
            merged.append(dict(item))
    return merged


__all__ = [
    "ClusterResourceFactory",
    "ClusterWriter",
    "InvalidPrivateKey",
    "deployment_name",
    "object_name",
    "parse_annotations",
    "parse_tolerations",
    "validate_private_key",
]
