"""Provider interfaces for corectl."""
from __future__ import annotations

from .cloud import CloudClient, CloudError, CloudNotFoundError
from .kubernetes import (
    ClusterConflictError,
    ClusterConnectionError,
    ClusterError,
    ClusterInfo,
    ClusterNotFoundError,
    CoreOperatorNotFoundError,
    KubernetesProvider,
    ResourceKind,
)
from .version_index import VersionCatalog, VersionCatalogError

__all__ = [
    "CloudClient",
    "CloudError",
    "CloudNotFoundError",
    "ClusterConflictError",
    "ClusterConnectionError",
    "ClusterError",
    "ClusterInfo",
    "ClusterNotFoundError",
    "CoreOperatorNotFoundError",
    "KubernetesProvider",
    "ResourceKind",
    "VersionCatalog",
    "VersionCatalogError",
]
