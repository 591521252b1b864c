"""Control-plane facing half of provisioning."""
from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from ..providers.cloud import CloudError, CloudNotFoundError
from ..providers.kubernetes import ClusterInfo
from .models import ClusterMetadata, CoreInstance, CoreInstanceParams, CoreInstanceUpdate

LOGGER = logging.getLogger(__name__)

_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class ControlPlane(Protocol):
    """Control-plane operations used by the registrar."""

    def create_core_instance(self, project_id: str, payload: dict[str, object]) -> dict[str, Any]:
        """Register a core instance."""
        ...

    def update_core_instance(self, instance_id: str, payload: dict[str, object]) -> None:
        """Update a core instance."""
        ...

    def delete_core_instance(self, instance_id: str) -> None:
        """Delete a core instance."""
        ...

    def get_core_instance(self, instance_id: str) -> dict[str, Any]:
        """Fetch a core instance."""
        ...

    def list_core_instances(
        self,
        project_id: str,
        *,
        name: str | None = None,
        environment_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """List core instances."""
        ...

    def list_environments(self, project_id: str, *, name: str | None = None) -> list[dict[str, Any]]:
        """List environments."""
        ...


class ClusterInspector(Protocol):
    """Read-only cluster introspection used for registration metadata."""

    def cluster_info(self) -> ClusterInfo:
        """Return cluster facts."""
        ...


class CoreInstanceRegistrar:
    """Create, update and delete core instance records in the control-plane.

    Validation such as name uniqueness belongs to the control-plane; its
    errors are surfaced as-is.
    """

    def __init__(
        self,
        cloud: ControlPlane,
        *,
        project_id: str,
        cluster: ClusterInspector | None = None,
    ) -> None:
        """Bind the registrar to a control-plane client and project."""
        self.cloud = cloud
        self.project_id = project_id
        self.cluster = cluster

    def create(self, params: CoreInstanceParams) -> CoreInstance:
        """Register a core instance and return it with its assigned ID."""
        payload = self.cloud.create_core_instance(self.project_id, params.to_payload())
        try:
            instance = CoreInstance.from_payload(payload, fallback_name=params.name or "")
        except ValueError as exc:
            message = f"invalid core instance response: {exc}"
            instance_id = str(payload.get("id") or "")
            if instance_id:
                try:
                    self.delete(instance_id)
                except CloudError as cleanup:
                    LOGGER.warning("could not delete core instance %s: %s", instance_id, cleanup)
                    message += f"; core instance {instance_id} could not be deleted: {cleanup}"
            raise CloudError(message) from exc
        LOGGER.debug("registered core instance %s (%s)", instance.name, instance.id)
        return instance

    def update(self, instance_id: str, update: CoreInstanceUpdate) -> None:
        """Apply *update* to the record *instance_id*."""
        self.cloud.update_core_instance(instance_id, update.to_payload())

    def delete(self, instance_id: str) -> bool:
        """Delete *instance_id*; return ``False`` when it was already gone."""
        try:
            self.cloud.delete_core_instance(instance_id)
        except CloudNotFoundError:
            LOGGER.debug("core instance %s already deleted", instance_id)
            return False
        return True

    def get(self, instance_id: str) -> CoreInstance:
        """Return the record *instance_id*."""
        return CoreInstance.from_payload(self.cloud.get_core_instance(instance_id))

    def fetch_cluster_metadata(self) -> ClusterMetadata:
        """Describe the target cluster for the registration payload."""
        if self.cluster is None:
            raise ValueError("a cluster is required to collect metadata")
        info = self.cluster.cluster_info()
        return ClusterMetadata(
            namespace=info.namespace,
            cluster_version=info.version,
            cluster_platform=info.platform,
            cluster_name=info.context or "default",
        )

    def resolve_environment_id(self, name: str) -> str:
        """Return the ID of environment *name*."""
        environments = self.cloud.list_environments(self.project_id, name=name)
        for environment in environments:
            if environment.get("name") == name and environment.get("id"):
                return str(environment["id"])
        raise CloudNotFoundError(f"could not find environment {name!r}")

    def resolve_instance_id(self, key: str, *, environment_id: str | None = None) -> str:
        """Return the ID of the core instance named (or identified by) *key*."""
        instances = self.cloud.list_core_instances(
            self.project_id, name=key, environment_id=environment_id
        )
        matches = [item for item in instances if item.get("name") == key]
        if len(matches) > 1:
            raise CloudError(f"ambiguous core instance name {key!r}, use the ID instead")
        if matches:
            return str(matches[0]["id"])
        if _UUID.match(key):
            return key
        raise CloudNotFoundError(f"could not find core instance {key!r}")


__all__ = [
    "ClusterInspector",
    "ControlPlane",
    "CoreInstanceRegistrar",
]
