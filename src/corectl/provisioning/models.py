"""Data models shared by the provisioning components."""
from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..providers.kubernetes import ResourceKind

LABEL_VERSION = "app.kubernetes.io/version"
LABEL_PART_OF = "app.kubernetes.io/part-of"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_CREATED_BY = "app.kubernetes.io/created-by"
LABEL_COMPONENT = "app.kubernetes.io/component"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_PROJECT_ID = "corectl_project_id"
LABEL_INSTANCE_ID = "corectl_instance_id"

_LABEL_VALUE_INVALID = re.compile(r"[^A-Za-z0-9_.-]+")
_LABEL_VALUE_MAX = 63


def sanitize_label_value(value: str) -> str:
    """Coerce *value* into the Kubernetes label-value grammar."""
    cleaned = _LABEL_VALUE_INVALID.sub("-", value.strip())[:_LABEL_VALUE_MAX]
    return cleaned.strip("-_.")


class ProvisioningState(str, Enum):
    """States of a single provisioning run."""

    IDLE = "idle"
    VERSION_RESOLVED = "version-resolved"
    REGISTERED = "registered"
    SECRET_CREATED = "secret-created"
    ROLE_CREATED = "role-created"
    ACCOUNT_CREATED = "account-created"
    BINDING_CREATED = "binding-created"
    DEPLOYMENT_CREATED = "deployment-created"
    READY = "ready"
    ROLLING_BACK = "rolling-back"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """Identity of a cluster object created during one provisioning run."""

    name: str
    namespace: str | None
    kind: ResourceKind

    def __str__(self) -> str:
        """Render as ``kind/name`` with the namespace when present."""
        if self.namespace:
            return f"{self.kind.value}/{self.name} (namespace={self.namespace})"
        return f"{self.kind.value}/{self.name}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "namespace": self.namespace, "kind": self.kind.value}


@dataclass(frozen=True, slots=True)
class LabelSet:
    """Deterministic labels linking cluster objects to a core instance.

    The instance-ID label is the only durable join key between the
    control-plane record and the cluster: teardown rediscovers objects by
    selecting on it.
    """

    instance_id: str
    instance_name: str
    project_id: str
    version: str

    def __post_init__(self) -> None:
        if not self.instance_id.strip():
            raise ValueError("core instance ID is required to build labels")

    @classmethod
    def for_instance(
        cls,
        instance: CoreInstance,
        *,
        project_id: str,
        version: str,
    ) -> LabelSet:
        """Build the label set for *instance*."""
        return cls(
            instance_id=instance.id,
            instance_name=instance.name,
            project_id=project_id,
            version=version,
        )

    def as_dict(self) -> dict[str, str]:
        """Return the labels applied to every object."""
        labels = {
            LABEL_VERSION: sanitize_label_value(self.version),
            LABEL_PART_OF: "corectl",
            LABEL_MANAGED_BY: "corectl",
            LABEL_CREATED_BY: "corectl",
            LABEL_COMPONENT: "operator",
            LABEL_INSTANCE: sanitize_label_value(self.instance_name),
            LABEL_PROJECT_ID: sanitize_label_value(self.project_id),
            LABEL_INSTANCE_ID: sanitize_label_value(self.instance_id),
        }
        return {key: value for key, value in labels.items() if value}

    def selector(self) -> str:
        """Return the label selector used to rediscover the instance objects."""
        return instance_selector(self.instance_id)


def instance_selector(instance_id: str) -> str:
    """Return the label selector matching every object of *instance_id*."""
    return f"{LABEL_INSTANCE_ID}={sanitize_label_value(instance_id)}"


@dataclass(frozen=True, slots=True)
class ClusterMetadata:
    """Cluster facts attached to the control-plane record."""

    namespace: str
    cluster_version: str
    cluster_platform: str
    cluster_name: str

    def to_payload(self) -> dict[str, str]:
        """Return the metadata block sent to the control-plane."""
        return {
            "k8s.namespace": self.namespace,
            "k8s.cluster_version": self.cluster_version,
            "k8s.cluster_platform": self.cluster_platform,
            "k8s.cluster_name": self.cluster_name,
        }


@dataclass(frozen=True, slots=True)
class CoreInstance:
    """A core instance as known by the control-plane."""

    id: str
    name: str
    environment_id: str | None = None
    environment_name: str | None = None
    version: str | None = None
    tags: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    private_key: bytes = b""

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        fallback_name: str = "",
    ) -> CoreInstance:
        """Build an instance from a control-plane response."""
        instance_id = str(payload.get("id") or "").strip()
        if not instance_id:
            raise ValueError("control-plane response is missing the core instance ID")
        tags = payload.get("tags") or ()
        return cls(
            id=instance_id,
            name=str(payload.get("name") or fallback_name),
            environment_id=_optional(payload.get("environmentID")),
            environment_name=_optional(payload.get("environmentName")),
            version=_optional(payload.get("version")),
            tags=tuple(str(tag) for tag in tags),
            metadata=dict(payload.get("metadata") or {}),
            private_key=_decode_private_key(payload.get("privateRSAKey")),
        )


@dataclass(frozen=True, slots=True)
class CoreInstanceParams:
    """Registration parameters sent to the control-plane."""

    name: str | None
    environment_id: str | None = None
    version: str | None = None
    tags: tuple[str, ...] = ()
    metadata: ClusterMetadata | None = None
    add_health_check_pipeline: bool = True
    health_check_pipeline_port: int | None = None
    health_check_pipeline_service_type: str | None = None
    cluster_logging: bool = False
    skip_service_creation: bool = False
    image: str | None = None

    def to_payload(self) -> dict[str, object]:
        """Return the JSON body of the create request."""
        payload: dict[str, object] = {
            "addHealthCheckPipeline": self.add_health_check_pipeline,
            "clusterLogging": self.cluster_logging,
            "skipServiceCreation": self.skip_service_creation,
            "tags": list(self.tags),
        }
        if self.name:
            payload["name"] = self.name
        if self.environment_id:
            payload["environmentID"] = self.environment_id
        if self.version:
            payload["version"] = self.version
        if self.metadata is not None:
            payload["metadata"] = self.metadata.to_payload()
        if self.health_check_pipeline_port is not None:
            payload["healthCheckPipelinePortNumber"] = self.health_check_pipeline_port
        if self.health_check_pipeline_service_type:
            payload["healthCheckPipelineServiceType"] = self.health_check_pipeline_service_type
        if self.image:
            payload["image"] = self.image
        return payload


@dataclass(frozen=True, slots=True)
class CoreInstanceUpdate:
    """Partial update applied to an existing control-plane record."""

    name: str | None = None
    version: str | None = None
    cluster_logging: bool | None = None
    skip_service_creation: bool | None = None

    def to_payload(self) -> dict[str, object]:
        """Return the JSON body of the update request (changed fields only)."""
        payload: dict[str, object] = {}
        if self.name:
            payload["name"] = self.name
        if self.version:
            payload["version"] = self.version
        if self.cluster_logging is not None:
            payload["clusterLogging"] = self.cluster_logging
        if self.skip_service_creation is not None:
            payload["skipServiceCreation"] = self.skip_service_creation
        return payload


@dataclass(frozen=True, slots=True)
class SyncImages:
    """Fully qualified images of the two sync containers."""

    to_cloud: str
    from_cloud: str

    @classmethod
    def for_tag(cls, to_cloud_repo: str, from_cloud_repo: str, tag: str) -> SyncImages:
        """Compose images from repositories and a single *tag*."""
        return cls(to_cloud=f"{to_cloud_repo}:{tag}", from_cloud=f"{from_cloud_repo}:{tag}")

    def as_list(self) -> list[str]:
        """Return the images in container order."""
        return [self.from_cloud, self.to_cloud]


@dataclass(frozen=True, slots=True)
class DeploymentOptions:
    """Runtime settings rendered into the sync deployment."""

    cloud_url: str
    token: str
    no_tls_verify: bool = False
    skip_service_creation: bool = False
    metrics: bool = False
    metrics_port: int = 15334
    memory_limit: str = "512Mi"
    annotations: Mapping[str, str] = field(default_factory=dict)
    tolerations: Sequence[Mapping[str, object]] = ()
    cloud_proxy: str | None = None
    http_proxy: str | None = None
    https_proxy: str | None = None
    no_proxy: str | None = None


@dataclass(frozen=True, slots=True)
class CreatedResource:
    """A rendered (and, outside dry-run, submitted) cluster object."""

    descriptor: ResourceDescriptor
    manifest: dict[str, Any]


def _optional(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _decode_private_key(value: object) -> bytes:
    if value is None or value == "":
        return b""
    if isinstance(value, bytes):
        return value
    text = str(value).strip()
    if text.startswith("-----BEGIN"):
        return text.encode("utf-8")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("control-plane returned an undecodable private key") from exc


__all__ = [
    "ClusterMetadata",
    "CoreInstance",
    "CoreInstanceParams",
    "CoreInstanceUpdate",
    "CreatedResource",
    "DeploymentOptions",
    "LABEL_INSTANCE_ID",
    "LABEL_PROJECT_ID",
    "LabelSet",
    "ProvisioningState",
    "ResourceDescriptor",
    "SyncImages",
    "instance_selector",
    "sanitize_label_value",
]
