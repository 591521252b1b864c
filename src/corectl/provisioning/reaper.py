"""Label-driven teardown of a core instance's cluster objects.

Teardown may run in a process that never provisioned anything, so the reaper
has no ledger: it rediscovers objects through the instance-ID label
selector. A listing pass prints what will be removed, then a separate
deletion pass removes it. Objects changed between the two passes are not
reconciled.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from rich.console import Console

from ..providers.kubernetes import ClusterError, ClusterNotFoundError, ResourceKind
from .models import ResourceDescriptor

LOGGER = logging.getLogger(__name__)

CLUSTER_SCOPE = "cluster"
FOREGROUND = "Foreground"

# Deletion order inside each namespace.
NAMESPACED_KINDS = (
    ResourceKind.DEPLOYMENT,
    ResourceKind.DAEMON_SET,
    ResourceKind.SERVICE,
    ResourceKind.SERVICE_ACCOUNT,
    ResourceKind.SECRET,
    ResourceKind.CONFIG_MAP,
)
# Handled once, after every namespace.
CLUSTER_KINDS = (
    ResourceKind.CLUSTER_ROLE_BINDING,
    ResourceKind.CLUSTER_ROLE,
)

_HEADERS = {
    ResourceKind.DEPLOYMENT: "Deployments",
    ResourceKind.DAEMON_SET: "DaemonSets",
    ResourceKind.SERVICE: "Services",
    ResourceKind.SERVICE_ACCOUNT: "Service accounts",
    ResourceKind.SECRET: "Secrets",
    ResourceKind.CONFIG_MAP: "ConfigMaps",
    ResourceKind.CLUSTER_ROLE_BINDING: "Role bindings",
    ResourceKind.CLUSTER_ROLE: "Cluster roles",
}


class ReaperCluster(Protocol):
    """Cluster operations used by the reaper."""

    def list_namespaces(self) -> list[str]:
        """Return all namespace names."""
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

    def delete(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        """Delete one object."""
        ...

    def delete_collection(
        self,
        kind: ResourceKind,
        selector: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        """Delete every object of *kind* matching *selector*."""
        ...


class ReapError(RuntimeError):
    """Raised when a skip-error teardown left some kinds behind."""

    def __init__(self, failures: Iterable[ReapFailure]) -> None:
        """Summarise *failures* by kind."""
        self.failures = list(failures)
        kinds = ", ".join(kind.value for kind in _failed_kinds(self.failures))
        super().__init__(f"could not delete some kubernetes resources ({kinds})")


@dataclass(frozen=True, slots=True)
class ReapFailure:
    """A kind (or one named object) that could not be listed or deleted."""

    kind: ResourceKind
    namespace: str | None
    error: BaseException
    name: str | None = None

    def __str__(self) -> str:
        """Render as ``kind [name] (namespace=ns): error``."""
        target = f"{self.kind.value} {self.name}" if self.name else self.kind.value
        return f"{target} (namespace={self.namespace or CLUSTER_SCOPE}): {self.error}"


@dataclass(slots=True)
class ReapPlan:
    """Result of the listing pass."""

    selector: str
    namespaces: list[str] = field(default_factory=list)
    items: list[ResourceDescriptor] = field(default_factory=list)
    failures: list[ReapFailure] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def empty(self) -> bool:
        """Return ``True`` when nothing matched the selector."""
        return not self.items

    def of_kind(self, kind: ResourceKind) -> list[ResourceDescriptor]:
        """Return the planned items of *kind*."""
        return [item for item in self.items if item.kind is kind]


@dataclass(slots=True)
class ReapReport:
    """Outcome of :meth:`ResourceReaper.reap`.

    ``deleted`` counts listed objects with no failure recorded against their
    kind and namespace (or, for services, their name). Collection deletes do
    not return per-object results, and objects that could not be listed are
    not counted.
    """

    planned: int = 0
    deleted: int = 0
    failures: list[ReapFailure] = field(default_factory=list)

    @property
    def failed_kinds(self) -> list[ResourceKind]:
        """Kinds with at least one failure, in deletion order."""
        return _failed_kinds(self.failures)

    @property
    def complete(self) -> bool:
        """Return ``True`` when every planned object was removed."""
        return not self.failures

    def raise_for_failures(self) -> None:
        """Raise :class:`ReapError` when any kind failed."""
        if self.failures:
            raise ReapError(self.failures)


class ResourceReaper:
    """Find and delete every cluster object carrying a label selector."""

    def __init__(self, cluster: ReaperCluster, *, console: Console | None = None) -> None:
        """Bind the reaper to *cluster*; listings are printed to *console*."""
        self.cluster = cluster
        self.console = console or Console()

    def plan(self, selector: str, *, skip_errors: bool = False) -> ReapPlan:
        """List and print every object matching *selector*."""
        plan = ReapPlan(selector=selector, namespaces=self.cluster.list_namespaces())
        for kind in NAMESPACED_KINDS:
            for namespace in plan.namespaces:
                self._collect(plan, kind, namespace, skip_errors)
        for kind in CLUSTER_KINDS:
            self._collect(plan, kind, None, skip_errors)

        for kind in (*NAMESPACED_KINDS, *CLUSTER_KINDS):
            items = plan.of_kind(kind)
            if not items:
                continue
            self.console.print(f"{_HEADERS[kind]}:", markup=False)
            for item in items:
                self.console.print(
                    f"\tnamespace={item.namespace or CLUSTER_SCOPE} name={item.name}",
                    markup=False,
                    highlight=False,
                )
        return plan

    def reap(
        self,
        selector: str,
        *,
        skip_errors: bool = False,
        plan: ReapPlan | None = None,
    ) -> ReapReport:
        """Delete every object matching *selector*.

        Without *skip_errors* the first failure is printed and re-raised
        unchanged; objects already deleted stay deleted. With *skip_errors*
        failures are collected and every remaining kind is still attempted.
        """
        if plan is None:
            plan = self.plan(selector, skip_errors=skip_errors)
        report = ReapReport(planned=len(plan), failures=list(plan.failures))
        if plan.empty and not plan.failures:
            return report

        for namespace in plan.namespaces:
            for kind in NAMESPACED_KINDS:
                self._delete(report, kind, selector, namespace, skip_errors)
        for kind in CLUSTER_KINDS:
            self._delete(report, kind, selector, None, skip_errors)

        failed = {(f.kind, f.namespace) for f in report.failures if f.name is None}
        failed_names = {(f.kind, f.namespace, f.name) for f in report.failures if f.name}
        report.deleted = sum(
            1
            for item in plan.items
            if (item.kind, item.namespace) not in failed
            and (item.kind, item.namespace, item.name) not in failed_names
        )
        LOGGER.debug("reaped %d of %d objects for %s", report.deleted, report.planned, selector)
        return report

    # ------------------------------------------------------------------
    def _collect(
        self,
        plan: ReapPlan,
        kind: ResourceKind,
        namespace: str | None,
        skip_errors: bool,
    ) -> None:
        try:
            objects = self.cluster.list(kind, plan.selector, namespace=namespace)
        except ClusterError as exc:
            self._report(f"could not list {_HEADERS[kind].lower()}", namespace, exc)
            if not skip_errors:
                raise
            plan.failures.append(ReapFailure(kind, namespace, exc))
            return
        for obj in objects:
            name = str((obj.get("metadata") or {}).get("name") or "")
            if name:
                plan.items.append(ResourceDescriptor(name, namespace, kind))

    def _delete(
        self,
        report: ReapReport,
        kind: ResourceKind,
        selector: str,
        namespace: str | None,
        skip_errors: bool,
    ) -> None:
        try:
            if kind is ResourceKind.SERVICE:
                self._delete_services(report, selector, namespace, skip_errors)
            else:
                self.cluster.delete_collection(
                    kind,
                    selector,
                    namespace=namespace,
                    propagation=FOREGROUND if kind is ResourceKind.DEPLOYMENT else None,
                )
        except ClusterNotFoundError:
            LOGGER.debug("no %s left in %s", kind.value, namespace or CLUSTER_SCOPE)
        except ClusterError as exc:
            self._report(f"could not delete {_HEADERS[kind].lower()}", namespace, exc)
            if not skip_errors:
                raise
            report.failures.append(ReapFailure(kind, namespace, exc))

    def _delete_services(
        self,
        report: ReapReport,
        selector: str,
        namespace: str | None,
        skip_errors: bool,
    ) -> None:
        # Services lack a collection delete on older API servers.
        for service in self.cluster.list(ResourceKind.SERVICE, selector, namespace=namespace):
            name = str((service.get("metadata") or {}).get("name") or "")
            if not name:
                continue
            try:
                self.cluster.delete(ResourceKind.SERVICE, name, namespace=namespace)
            except ClusterNotFoundError:
                continue
            except ClusterError as exc:
                if not skip_errors:
                    raise
                self._report(f"could not delete service {name}", namespace, exc)
                report.failures.append(ReapFailure(ResourceKind.SERVICE, namespace, exc, name=name))

    def _report(self, message: str, namespace: str | None, exc: BaseException) -> None:
        where = f" in namespace {namespace}" if namespace else ""
        self.console.print(f"[red]{message}{where}[/red]: {exc}")


def _failed_kinds(failures: Iterable[ReapFailure]) -> list[ResourceKind]:
    seen = {failure.kind for failure in failures}
    return [kind for kind in (*NAMESPACED_KINDS, *CLUSTER_KINDS) if kind in seen]


__all__ = [
    "CLUSTER_KINDS",
    "NAMESPACED_KINDS",
    "ReapError",
    "ReapFailure",
    "ReapPlan",
    "ReapReport",
    "ReaperCluster",
    "ResourceReaper",
]
