"""Compensating-action ledger for partially provisioned core instances."""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from ..providers.kubernetes import ClusterError, ClusterNotFoundError, ResourceKind
from .models import ResourceDescriptor

LOGGER = logging.getLogger(__name__)


class RollbackCancelled(RuntimeError):
    """Recorded against entries skipped because cancellation fired mid-rollback."""


class ObjectDeleter(Protocol):
    """The slice of the cluster provider the ledger needs."""

    def delete(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        """Delete object *name* of *kind*."""
        ...


@dataclass(frozen=True, slots=True)
class RollbackFailure:
    """A resource the rollback could not remove."""

    descriptor: ResourceDescriptor
    error: BaseException

    def __str__(self) -> str:
        """Render as ``<descriptor>: <error>``."""
        return f"{self.descriptor}: {self.error}"


@dataclass(slots=True)
class RollbackReport:
    """Outcome of :meth:`RollbackLedger.rollback_all`."""

    deleted: list[ResourceDescriptor] = field(default_factory=list)
    failures: list[RollbackFailure] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        """Number of resources removed (or already gone)."""
        return len(self.deleted)

    @property
    def complete(self) -> bool:
        """Return ``True`` when nothing was left behind."""
        return not self.failures


class RollbackLedger:
    """Ordered record of the resources created during one provisioning run.

    Entries must be appended immediately after each successful creation so a
    failure on step N always finds steps 1..N-1 recorded. Rollback walks the
    entries newest first, deleting dependents before their dependencies, and
    keeps going past individual failures.
    """

    def __init__(self) -> None:
        """Start with an empty ledger."""
        self._entries: list[ResourceDescriptor] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[ResourceDescriptor, ...]:
        """Recorded descriptors in creation order."""
        return tuple(self._entries)

    def append(self, descriptor: ResourceDescriptor) -> None:
        """Record *descriptor* as created."""
        self._entries.append(descriptor)

    def rollback_all(
        self,
        cluster: ObjectDeleter,
        *,
        cancel: threading.Event | None = None,
        on_delete: Callable[[ResourceDescriptor, BaseException | None], None] | None = None,
    ) -> RollbackReport:
        """Delete every recorded resource in reverse creation order.

        Resources that are already gone count as deleted. When *cancel* is set
        the walk stops and the remaining entries are reported as failures.
        *on_delete* is invoked after each attempt with the error, if any.
        """
        report = RollbackReport()
        pending = list(reversed(self._entries))
        for index, descriptor in enumerate(pending):
            if cancel is not None and cancel.is_set():
                for skipped in pending[index:]:
                    report.failures.append(
                        RollbackFailure(skipped, RollbackCancelled("rollback cancelled"))
                    )
                break
            error: BaseException | None = None
            try:
                cluster.delete(descriptor.kind, descriptor.name, namespace=descriptor.namespace)
            except ClusterNotFoundError:
                LOGGER.debug("rollback: %s already absent", descriptor)
            except ClusterError as exc:
                error = exc
            if error is None:
                report.deleted.append(descriptor)
            else:
                LOGGER.debug("rollback: could not delete %s: %s", descriptor, error)
                report.failures.append(RollbackFailure(descriptor, error))
            if on_delete is not None:
                on_delete(descriptor, error)
        return report


__all__ = [
    "ObjectDeleter",
    "RollbackCancelled",
    "RollbackFailure",
    "RollbackLedger",
    "RollbackReport",
]
