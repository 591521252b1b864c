"""Kubernetes provider built on the official ``kubernetes`` client.

The provider exposes a small, kind-addressed surface (create, read, list,
delete, delete-by-label) over the typed API groups so the provisioning code
can stay agnostic of CoreV1/AppsV1/RbacV1 method naming. Manifests go in and
come out as plain dictionaries.

API failures are raised as :class:`ClusterError` with the HTTP status kept on
the exception; 404 and 409 responses map to :class:`ClusterNotFoundError`
and :class:`ClusterConflictError` so callers can branch on them. Transport
failures surface as :class:`ClusterConnectionError`.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
DEFAULT_CLUSTER_NAME = "default"
OPERATOR_SELECTOR = "control-plane=controller-manager"
LATEST_TAG = "latest"


class ClusterError(RuntimeError):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Store *message* alongside the HTTP *status*, when known."""
        super().__init__(message)
        self.status = status


class ClusterNotFoundError(ClusterError):
    """Raised when the addressed object (or namespace) does not exist."""


class ClusterConflictError(ClusterError):
    """Raised when an object with the same name already exists."""


class ClusterConnectionError(ClusterError):
    """Raised when the cluster cannot be configured or reached."""


class CoreOperatorNotFoundError(ClusterError):
    """Raised when no core operator deployment runs in the cluster."""


class ResourceKind(str, Enum):
    """Kubernetes object kinds handled by corectl."""

    NAMESPACE = "namespace"
    SECRET = "secret"
    CLUSTER_ROLE = "cluster-role"
    SERVICE_ACCOUNT = "service-account"
    CLUSTER_ROLE_BINDING = "cluster-role-binding"
    DEPLOYMENT = "deployment"
    DAEMON_SET = "daemon-set"
    SERVICE = "service"
    CONFIG_MAP = "config-map"

    @property
    def cluster_scoped(self) -> bool:
        """Return ``True`` for kinds that do not live in a namespace."""
        return self in _CLUSTER_SCOPED

    @property
    def api_kind(self) -> str:
        """Return the ``kind`` field used in manifests."""
        return _API_KINDS[self]

    @property
    def api_version(self) -> str:
        """Return the ``apiVersion`` field used in manifests."""
        return _API_VERSIONS[self]


_CLUSTER_SCOPED = frozenset(
    {ResourceKind.NAMESPACE, ResourceKind.CLUSTER_ROLE, ResourceKind.CLUSTER_ROLE_BINDING}
)
_API_KINDS = {
    ResourceKind.NAMESPACE: "Namespace",
    ResourceKind.SECRET: "Secret",
    ResourceKind.CLUSTER_ROLE: "ClusterRole",
    ResourceKind.SERVICE_ACCOUNT: "ServiceAccount",
    ResourceKind.CLUSTER_ROLE_BINDING: "ClusterRoleBinding",
    ResourceKind.DEPLOYMENT: "Deployment",
    ResourceKind.DAEMON_SET: "DaemonSet",
    ResourceKind.SERVICE: "Service",
    ResourceKind.CONFIG_MAP: "ConfigMap",
}
_API_VERSIONS = {
    ResourceKind.NAMESPACE: "v1",
    ResourceKind.SECRET: "v1",
    ResourceKind.CLUSTER_ROLE: "rbac.authorization.k8s.io/v1",
    ResourceKind.SERVICE_ACCOUNT: "v1",
    ResourceKind.CLUSTER_ROLE_BINDING: "rbac.authorization.k8s.io/v1",
    ResourceKind.DEPLOYMENT: "apps/v1",
    ResourceKind.DAEMON_SET: "apps/v1",
    ResourceKind.SERVICE: "v1",
    ResourceKind.CONFIG_MAP: "v1",
}
# (API group attribute, method suffix) for each kind.
_DISPATCH = {
    ResourceKind.NAMESPACE: ("core", "namespace"),
    ResourceKind.SECRET: ("core", "secret"),
    ResourceKind.CLUSTER_ROLE: ("rbac", "cluster_role"),
    ResourceKind.SERVICE_ACCOUNT: ("core", "service_account"),
    ResourceKind.CLUSTER_ROLE_BINDING: ("rbac", "cluster_role_binding"),
    ResourceKind.DEPLOYMENT: ("apps", "deployment"),
    ResourceKind.DAEMON_SET: ("apps", "daemon_set"),
    ResourceKind.SERVICE: ("core", "service"),
    ResourceKind.CONFIG_MAP: ("core", "config_map"),
}


@dataclass(frozen=True, slots=True)
class ClusterInfo:
    """Read-only facts about the connected cluster."""

    context: str
    namespace: str
    version: str
    platform: str


class KubernetesProvider:
    """Kind-addressed wrapper around the Kubernetes API groups."""

    def __init__(
        self,
        api_client: client.ApiClient,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        context: str = DEFAULT_CLUSTER_NAME,
    ) -> None:
        """Bind the provider to *api_client* and a default *namespace*."""
        self.api_client = api_client
        self.namespace = namespace
        self.context = context
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.rbac = client.RbacAuthorizationV1Api(api_client)
        self.version_api = client.VersionApi(api_client)

    @classmethod
    def connect(
        cls,
        *,
        kubeconfig: Path | None = None,
        context: str | None = None,
        namespace: str | None = None,
    ) -> KubernetesProvider:
        """Build a provider from kubeconfig, falling back to in-cluster config.

        The namespace defaults to the one set on the active context, then to
        ``default``. The context name doubles as the cluster name recorded on
        the core instance.
        """
        config_file = str(kubeconfig) if kubeconfig else None
        try:
            contexts, active = config.list_kube_config_contexts(config_file=config_file)
        except (ConfigException, FileNotFoundError) as exc:
            if kubeconfig is not None or context is not None:
                raise ClusterConnectionError(f"could not load kubeconfig: {exc}") from exc
            return cls._connect_in_cluster(namespace, exc)

        selected = active
        if context:
            selected = next((item for item in contexts if item.get("name") == context), None)
            if selected is None:
                raise ClusterConnectionError(f"kubeconfig context {context!r} not found")
        context_name = str((selected or {}).get("name") or DEFAULT_CLUSTER_NAME)
        context_namespace = ((selected or {}).get("context") or {}).get("namespace")
        try:
            api_client = config.new_client_from_config(
                config_file=config_file,
                context=context_name if selected else None,
            )
        except (ConfigException, FileNotFoundError) as exc:
            raise ClusterConnectionError(f"could not load kubeconfig: {exc}") from exc
        resolved_namespace = namespace or context_namespace or DEFAULT_NAMESPACE
        LOGGER.debug("using context %s namespace %s", context_name, resolved_namespace)
        return cls(api_client, namespace=resolved_namespace, context=context_name)

    @classmethod
    def _connect_in_cluster(
        cls,
        namespace: str | None,
        kubeconfig_error: Exception,
    ) -> KubernetesProvider:
        configuration = client.Configuration()
        try:
            config.load_incluster_config(client_configuration=configuration)
        except ConfigException as exc:
            raise ClusterConnectionError(
                f"could not load kubeconfig ({kubeconfig_error}) or in-cluster config ({exc})"
            ) from exc
        return cls(
            client.ApiClient(configuration),
            namespace=namespace or DEFAULT_NAMESPACE,
            context=DEFAULT_CLUSTER_NAME,
        )

    # ------------------------------------------------------------------
    # Generic object operations
    def create(
        self,
        kind: ResourceKind,
        manifest: Mapping[str, Any],
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Create *manifest* and return the stored object."""
        name = str(manifest.get("metadata", {}).get("name", ""))
        method, args = self._method("create", kind, namespace)
        stored = self._call(f"create {kind.value} {name}", method, *args, body=dict(manifest))
        return self._to_dict(stored)

    def read(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Return the object *name* of *kind*."""
        method, args = self._method("read", kind, namespace)
        return self._to_dict(self._call(f"read {kind.value} {name}", method, name, *args))

    def exists(self, kind: ResourceKind, name: str, *, namespace: str | None = None) -> bool:
        """Return ``True`` when *name* of *kind* exists."""
        try:
            self.read(kind, name, namespace=namespace)
        except ClusterNotFoundError:
            return False
        return True

    def replace(
        self,
        kind: ResourceKind,
        name: str,
        manifest: Mapping[str, Any],
        *,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Replace object *name* with *manifest*."""
        method, args = self._method("replace", kind, namespace)
        stored = self._call(f"replace {kind.value} {name}", method, name, *args, body=dict(manifest))
        return self._to_dict(stored)

    def delete(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        """Delete object *name* of *kind*."""
        method, args = self._method("delete", kind, namespace)
        kwargs: dict[str, Any] = {}
        if propagation:
            kwargs["propagation_policy"] = propagation
        self._call(f"delete {kind.value} {name}", method, name, *args, **kwargs)

    def list(
        self,
        kind: ResourceKind,
        selector: str,
        *,
        namespace: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return every object of *kind* matching the label *selector*."""
        method, args = self._method("list", kind, namespace)
        listing = self._call(f"list {kind.value}", method, *args, label_selector=selector)
        return [self._to_dict(item) for item in (listing.items or [])]

    def delete_collection(
        self,
        kind: ResourceKind,
        selector: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        """Delete every object of *kind* matching the label *selector*."""
        method, args = self._method("delete_collection", kind, namespace)
        kwargs: dict[str, Any] = {"label_selector": selector}
        if propagation:
            kwargs["propagation_policy"] = propagation
        self._call(f"delete {kind.value} collection", method, *args, **kwargs)

    # ------------------------------------------------------------------
    # Cluster introspection
    def list_namespaces(self) -> list[str]:
        """Return the names of all namespaces."""
        listing = self._call("list namespaces", self.core.list_namespace)
        return [item.metadata.name for item in (listing.items or [])]

    def namespace_exists(self, name: str) -> bool:
        """Return ``True`` when namespace *name* exists."""
        return self.exists(ResourceKind.NAMESPACE, name)

    def create_namespace(self, name: str) -> None:
        """Create namespace *name*."""
        self.create(
            ResourceKind.NAMESPACE,
            {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}},
        )

    def deployment_readiness(self, name: str, *, namespace: str | None = None) -> tuple[int, int]:
        """Return ``(ready_replicas, desired_replicas)`` for deployment *name*."""
        target = namespace or self.namespace
        deployment = self._call(
            f"read deployment {name} status",
            self.apps.read_namespaced_deployment_status,
            name,
            target,
        )
        desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        ready = (deployment.status.ready_replicas or 0) if deployment.status else 0
        return ready, desired

    def operator_version(self, selector: str = OPERATOR_SELECTOR) -> str:
        """Return the image tag of the core operator running in the cluster.

        Deployments are searched across all namespaces; the tag of the first
        container of the first match is returned (``latest`` when untagged).
        """
        listing = self._call(
            "list core operator deployments",
            self.apps.list_deployment_for_all_namespaces,
            label_selector=selector,
        )
        for deployment in listing.items or []:
            containers = deployment.spec.template.spec.containers or []
            if containers:
                return image_tag(containers[0].image or "")
        raise CoreOperatorNotFoundError(f"no deployment matching {selector} found")

    def cluster_info(self) -> ClusterInfo:
        """Return version and platform details of the connected cluster."""
        info = self._call("read cluster version", self.version_api.get_code)
        return ClusterInfo(
            context=self.context,
            namespace=self.namespace,
            version=str(info.git_version or ""),
            platform=str(info.platform or ""),
        )

    # ------------------------------------------------------------------
    def _method(
        self,
        verb: str,
        kind: ResourceKind,
        namespace: str | None,
    ) -> tuple[Callable[..., Any], tuple[str, ...]]:
        group, suffix = _DISPATCH[kind]
        api = getattr(self, group)
        if kind.cluster_scoped:
            return getattr(api, f"{verb}_{suffix}"), ()
        return getattr(api, f"{verb}_namespaced_{suffix}"), (namespace or self.namespace,)

    def _call(self, action: str, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        LOGGER.debug("kubernetes: %s", action)
        try:
            return method(*args, **kwargs)
        except ApiException as exc:
            raise _translate_api_error(action, exc) from exc
        except (TransportError, OSError) as exc:
            raise ClusterConnectionError(f"{action}: {exc}") from exc

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)


def image_tag(image: str) -> str:
    """Return the tag of *image*, ignoring registry ports and digests."""
    reference = image.split("@", 1)[0]
    repository, sep, tag = reference.rpartition(":")
    if not sep or not repository or "/" in tag:
        return LATEST_TAG
    return tag


def _translate_api_error(action: str, exc: ApiException) -> ClusterError:
    status = exc.status
    reason = (exc.reason or "").strip() or "unknown error"
    message = f"{action}: {reason} (HTTP {status})"
    if status == 404:
        return ClusterNotFoundError(message, status=status)
    if status == 409:
        return ClusterConflictError(message, status=status)
    return ClusterError(message, status=status)


__all__ = [
    "ClusterConflictError",
    "ClusterConnectionError",
    "ClusterError",
    "ClusterInfo",
    "ClusterNotFoundError",
    "CoreOperatorNotFoundError",
    "KubernetesProvider",
    "LATEST_TAG",
    "OPERATOR_SELECTOR",
    "ResourceKind",
    "image_tag",
]
