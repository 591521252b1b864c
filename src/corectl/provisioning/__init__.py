"""Core instance provisioning and teardown."""
from __future__ import annotations

from .factory import ClusterResourceFactory, InvalidPrivateKey
from .ledger import RollbackLedger, RollbackReport
from .models import (
    CoreInstance,
    DeploymentOptions,
    LabelSet,
    ProvisioningState,
    ResourceDescriptor,
    instance_selector,
)
from .orchestrator import (
    InvalidUpdate,
    ProvisioningCancelled,
    ProvisioningError,
    ProvisioningOrchestrator,
    ProvisionRequest,
    UpdateRequest,
    WaitTimeout,
)
from .reaper import ReapError, ReapReport, ResourceReaper
from .registrar import CoreInstanceRegistrar
from .versions import InvalidVersion, VersionNotPublished, VersionResolver

__all__ = [
    "ClusterResourceFactory",
    "CoreInstance",
    "CoreInstanceRegistrar",
    "DeploymentOptions",
    "InvalidPrivateKey",
    "InvalidUpdate",
    "InvalidVersion",
    "LabelSet",
    "ProvisionRequest",
    "ProvisioningCancelled",
    "ProvisioningError",
    "ProvisioningOrchestrator",
    "ProvisioningState",
    "ReapError",
    "ReapReport",
    "ResourceDescriptor",
    "ResourceReaper",
    "RollbackLedger",
    "RollbackReport",
    "UpdateRequest",
    "VersionNotPublished",
    "VersionResolver",
    "WaitTimeout",
    "instance_selector",
]
