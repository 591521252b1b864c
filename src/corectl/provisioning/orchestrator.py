"""Provisioning state machine for core instances.

A run moves through::

    IDLE -> VERSION_RESOLVED -> REGISTERED -> SECRET_CREATED -> ROLE_CREATED
         -> ACCOUNT_CREATED -> BINDING_CREATED -> DEPLOYMENT_CREATED -> READY

and any step after registration may divert to ``ROLLING_BACK -> FAILED``.

Failure policy:

* The version gate runs first; a bad or unpublished version aborts before
  the control-plane or the cluster is touched.
* A cluster without a running core operator is refused before registering.
  When no version is requested the operator's own tag is deployed.
* A registration failure aborts with nothing to undo.
* A failed cluster step prints a diagnostic naming the step, walks the
  rollback ledger newest first, deletes the just-created control-plane
  record and raises :class:`ProvisioningError`. Rollback trouble is reported
  alongside, never instead of, the original error.

Retrying after a partial failure is guarded by deterministic object names:
before registering a named instance every object the run would create is
checked, and existing ones abort the run with an "already exists" error.

Waiting for the deployment to become ready is advisory. A timeout raises
:class:`WaitTimeout` but leaves the instance provisioned.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from rich.console import Console

from ..config import ImagesConfig
from ..logging import OperationScope
from ..providers.cloud import CloudError
from ..providers.kubernetes import (
    LATEST_TAG,
    ClusterError,
    ClusterNotFoundError,
    CoreOperatorNotFoundError,
    ResourceKind,
)
from .factory import DEFAULT_ENVIRONMENT, ClusterResourceFactory
from .ledger import RollbackLedger, RollbackReport
from .models import (
    CoreInstance,
    CoreInstanceParams,
    CoreInstanceUpdate,
    CreatedResource,
    DeploymentOptions,
    ProvisioningState,
    ResourceDescriptor,
    SyncImages,
    instance_selector,
)
from .registrar import CoreInstanceRegistrar
from .versions import VersionResolver

LOGGER = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised when a provisioning or update step fails.

    ``step`` names the failed step; ``rollback`` and ``record_deleted``
    describe the compensation that ran. The original error is kept as
    ``cause`` (and ``__cause__``).
    """

    def __init__(
        self,
        step: str,
        message: str,
        *,
        cause: BaseException | None = None,
        rollback: RollbackReport | None = None,
        record_deleted: bool | None = None,
        record_error: BaseException | None = None,
        instance_id: str | None = None,
    ) -> None:
        """Compose the user-facing message from the step outcome."""
        self.step = step
        self.cause = cause
        self.rollback = rollback
        self.record_deleted = record_deleted
        self.record_error = record_error
        self.instance_id = instance_id
        parts = [f"{message}: {cause}" if cause is not None else message]
        if rollback is not None:
            parts.append(f"rolled back {rollback.deleted_count} resources")
            if rollback.failures:
                residual = ", ".join(str(failure) for failure in rollback.failures)
                parts.append(
                    f"{len(rollback.failures)} resources could not be cleaned up "
                    f"({residual}); manual cleanup may be required"
                )
        if record_error is not None:
            parts.append(
                f"control-plane record {instance_id} could not be deleted: {record_error}"
            )
        super().__init__("; ".join(parts))


class ProvisioningCancelled(RuntimeError):
    """Raised when the caller cancels a run between blocking steps."""


class WaitTimeout(RuntimeError):
    """Raised when the deployment does not become ready in time."""


class InvalidUpdate(ValueError):
    """Raised for contradictory or no-op update requests."""


class ProvisioningCluster(Protocol):
    """Cluster operations used directly by the orchestrator."""

    def exists(self, kind: ResourceKind, name: str, *, namespace: str | None = None) -> bool:
        """Return ``True`` when the object exists."""
        ...

    def delete(
        self,
        kind: ResourceKind,
        name: str,
        *,
        namespace: str | None = None,
        propagation: str | None = None,
    ) -> None:
        """Delete an object."""
        ...

    def deployment_readiness(self, name: str, *, namespace: str | None = None) -> tuple[int, int]:
        """Return ready and desired replica counts."""
        ...

    def operator_version(self) -> str:
        """Return the tag of the running core operator."""
        ...


@dataclass(frozen=True, slots=True)
class ProvisionRequest:
    """User parameters of a provisioning run."""

    name: str | None
    options: DeploymentOptions
    version: str | None = None
    environment: str | None = None
    tags: tuple[str, ...] = ()
    add_health_check_pipeline: bool = True
    health_check_pipeline_port: int | None = None
    health_check_pipeline_service_type: str | None = None
    cluster_logging: bool = False
    fluent_bit_image: str | None = None
    image_to_cloud: str | None = None
    image_from_cloud: str | None = None


@dataclass(slots=True)
class ProvisioningResult:
    """Outcome of a successful (or dry-run) provisioning run."""

    instance: CoreInstance
    images: SyncImages
    resources: list[CreatedResource]
    ledger: RollbackLedger
    history: list[ProvisioningState]
    dry_run: bool = False

    @property
    def manifests(self) -> list[dict[str, Any]]:
        """Rendered manifests in creation order."""
        return [resource.manifest for resource in self.resources]

    @property
    def deployment(self) -> ResourceDescriptor:
        """Descriptor of the sync deployment."""
        return self.resources[-1].descriptor


@dataclass(frozen=True, slots=True)
class UpdateRequest:
    """User parameters of an update run."""

    instance_key: str
    instance_id: str
    options: DeploymentOptions
    new_name: str | None = None
    version: str | None = None
    enable_cluster_logging: bool = False
    disable_cluster_logging: bool = False
    skip_service_creation: bool = False


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of an update run."""

    instance_id: str
    version: str
    deployment: CreatedResource


@dataclass(frozen=True, slots=True)
class _Step:
    name: str
    label: str
    state: ProvisioningState


_SECRET = _Step("secret", "kubernetes secret from private key", ProvisioningState.SECRET_CREATED)
_ROLE = _Step("cluster-role", "kubernetes cluster role", ProvisioningState.ROLE_CREATED)
_ACCOUNT = _Step(
    "service-account", "kubernetes service account", ProvisioningState.ACCOUNT_CREATED
)
_BINDING = _Step(
    "cluster-role-binding", "kubernetes cluster role binding", ProvisioningState.BINDING_CREATED
)
_DEPLOYMENT = _Step("deployment", "kubernetes deployment", ProvisioningState.DEPLOYMENT_CREATED)


@dataclass
class ProvisioningOrchestrator:
    """Sequence version gate, registration and resource creation."""

    resolver: VersionResolver
    registrar: CoreInstanceRegistrar
    factory: ClusterResourceFactory
    cluster: ProvisioningCluster | None
    images: ImagesConfig
    default_tag: str
    console: Console = field(default_factory=Console)
    cancel: threading.Event | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    state: ProvisioningState = field(default=ProvisioningState.IDLE, init=False)
    history: list[ProvisioningState] = field(default_factory=list, init=False)
    _op: OperationScope | None = field(default=None, init=False, repr=False)

    # ------------------------------------------------------------------
    def provision(
        self,
        request: ProvisionRequest,
        *,
        op: OperationScope | None = None,
    ) -> ProvisioningResult:
        """Run the provisioning state machine for *request*."""
        self._begin(op)
        tag = self.resolver.resolve(request.version)
        self._transition(ProvisioningState.VERSION_RESOLVED, detail=tag or "default")

        if self.factory.dry_run:
            return self._render_dry_run(request, self._images(request, tag or self.default_tag))

        environment_id = None
        if request.environment:
            environment_id = self._guarded(
                "environment",
                f"could not find environment {request.environment!r}",
                lambda: self.registrar.resolve_environment_id(request.environment or ""),
            )
        operator_version = self._check_operator()
        if tag is None and operator_version and operator_version != LATEST_TAG:
            tag = operator_version
        images = self._images(request, tag or self.default_tag)
        self._preflight(request)
        metadata = self._guarded(
            "metadata", "could not inspect kubernetes cluster", self.registrar.fetch_cluster_metadata
        )
        self._guarded(
            "namespace",
            "could not ensure kubernetes namespace exists",
            self.factory.ensure_namespace,
        )

        params = CoreInstanceParams(
            name=request.name,
            environment_id=environment_id,
            version=tag,
            tags=request.tags,
            metadata=metadata,
            add_health_check_pipeline=request.add_health_check_pipeline,
            health_check_pipeline_port=request.health_check_pipeline_port,
            health_check_pipeline_service_type=request.health_check_pipeline_service_type,
            cluster_logging=request.cluster_logging,
            skip_service_creation=request.options.skip_service_creation,
            image=request.fluent_bit_image,
        )
        instance = self._guarded(
            "register",
            "could not create core instance at control-plane",
            lambda: self.registrar.create(params),
        )
        if not instance.environment_name:
            instance = dataclasses.replace(
                instance, environment_name=request.environment or DEFAULT_ENVIRONMENT
            )
        self._transition(ProvisioningState.REGISTERED, detail=instance.id)

        ledger = RollbackLedger()
        secret = self._create(_SECRET, ledger, instance, lambda: self.factory.create_secret(instance))
        role = self._create(_ROLE, ledger, instance, lambda: self.factory.create_cluster_role(instance))
        account = self._create(
            _ACCOUNT, ledger, instance, lambda: self.factory.create_service_account(instance)
        )
        binding = self._create(
            _BINDING,
            ledger,
            instance,
            lambda: self.factory.create_cluster_role_binding(instance, role, account),
        )
        deployment = self._create(
            _DEPLOYMENT,
            ledger,
            instance,
            lambda: self.factory.create_deployment(instance, account, images, request.options),
        )
        self._transition(ProvisioningState.READY)
        return ProvisioningResult(
            instance=instance,
            images=images,
            resources=[secret, role, account, binding, deployment],
            ledger=ledger,
            history=list(self.history),
        )

    def update(
        self,
        request: UpdateRequest,
        *,
        op: OperationScope | None = None,
    ) -> UpdateResult:
        """Update the control-plane record and roll the sync deployment."""
        self._begin(op)
        tag = self.resolver.resolve(request.version)
        if request.new_name and request.new_name == request.instance_key:
            raise InvalidUpdate("cannot update core instance with the same name")
        if request.enable_cluster_logging and request.disable_cluster_logging:
            raise InvalidUpdate(
                "either --enable-cluster-logging or --disable-cluster-logging can be set"
            )
        cluster_logging: bool | None = None
        if request.enable_cluster_logging:
            cluster_logging = True
        elif request.disable_cluster_logging:
            cluster_logging = False

        update = CoreInstanceUpdate(
            name=request.new_name,
            version=tag,
            cluster_logging=cluster_logging,
            skip_service_creation=True if request.skip_service_creation else None,
        )
        self._guarded(
            "update",
            "could not update core instance at control-plane",
            lambda: self.registrar.update(request.instance_id, update),
        )
        self._guarded(
            "namespace",
            "could not ensure kubernetes namespace exists",
            self.factory.ensure_namespace,
        )
        resolved = tag or self.default_tag
        images = SyncImages.for_tag(self.images.to_cloud, self.images.from_cloud, resolved)
        deployment = self._guarded(
            "deployment",
            f"could not update core-instance to version {resolved}",
            lambda: self.factory.update_deployment(
                instance_selector(request.instance_id), images, request.options
            ),
        )
        return UpdateResult(instance_id=request.instance_id, version=resolved, deployment=deployment)

    def wait_ready(
        self,
        deployment: ResourceDescriptor,
        *,
        timeout: float,
        poll_interval: float,
    ) -> None:
        """Poll *deployment* until every desired replica is ready."""
        if self.cluster is None:
            raise ValueError("a cluster is required to wait for readiness")
        deadline = self.clock() + timeout
        while True:
            self._check_cancel()
            try:
                ready, desired = self.cluster.deployment_readiness(
                    deployment.name, namespace=deployment.namespace
                )
            except ClusterNotFoundError:
                ready, desired = 0, 1
            if desired > 0 and ready >= desired:
                self._record("deployment.ready", detail=f"{ready}/{desired}")
                return
            remaining = deadline - self.clock()
            if remaining <= 0:
                self._record("deployment.ready", status="warning", detail=f"{ready}/{desired}")
                raise WaitTimeout(
                    f"deployment {deployment.name} not ready after {timeout:g}s "
                    f"({ready}/{desired} replicas ready)"
                )
            self.sleep(min(poll_interval, remaining))

    # ------------------------------------------------------------------
    def _begin(self, op: OperationScope | None) -> None:
        self._op = op
        self.state = ProvisioningState.IDLE
        self.history = [ProvisioningState.IDLE]

    def _transition(self, state: ProvisioningState, *, detail: object = None) -> None:
        LOGGER.debug("provisioning: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)
        self._record(f"state.{state.value}", detail=detail)

    def _record(self, name: str, *, status: str = "success", detail: object = None) -> None:
        if self._op is not None:
            self._op.add_step(name, status=status, detail=detail)

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ProvisioningCancelled("provisioning cancelled")

    def _guarded(self, step: str, message: str, action: Callable[[], Any]) -> Any:
        """Run a pre- or non-ledger step, wrapping failures with the step name."""
        self._check_cancel()
        try:
            return action()
        except (CloudError, ClusterError) as exc:
            self._record(f"{step}", status="error", detail=str(exc))
            raise ProvisioningError(step, message, cause=exc) from exc

    def _images(self, request: ProvisionRequest, tag: str) -> SyncImages:
        images = SyncImages.for_tag(self.images.to_cloud, self.images.from_cloud, tag)
        return SyncImages(
            to_cloud=request.image_to_cloud or images.to_cloud,
            from_cloud=request.image_from_cloud or images.from_cloud,
        )

    def _check_operator(self) -> str | None:
        """Return the running operator's tag; refuse clusters without one."""
        if self.cluster is None:
            return None
        self._check_cancel()
        try:
            version = self.cluster.operator_version()
        except CoreOperatorNotFoundError as exc:
            self._record("operator", status="error", detail=str(exc))
            raise ProvisioningError(
                "operator",
                "calyptia core operator not found running in the cluster; "
                "install the core operator first",
            ) from exc
        except ClusterError as exc:
            self._record("operator", status="error", detail=str(exc))
            raise ProvisioningError(
                "operator", "could not check the core operator version", cause=exc
            ) from exc
        self.console.print(f"Found calyptia core operator installed, version: {version}")
        self._record("operator", detail=version)
        return version

    def _preflight(self, request: ProvisionRequest) -> None:
        if not request.name or self.cluster is None:
            return
        planned = self.factory.planned_descriptors(request.name, request.environment)
        existing = self._guarded(
            "preflight",
            "could not check for existing resources",
            lambda: [
                descriptor
                for descriptor in planned
                if self.cluster is not None
                and self.cluster.exists(
                    descriptor.kind, descriptor.name, namespace=descriptor.namespace
                )
            ],
        )
        if existing:
            listed = ", ".join(str(descriptor) for descriptor in existing)
            raise ProvisioningError(
                "preflight",
                f"resources for core instance {request.name!r} already exist ({listed}); "
                "run `corectl delete core_instance operator` first or choose another name",
            )
        self._record("preflight", detail=f"{len(planned)} names free")

    def _create(
        self,
        step: _Step,
        ledger: RollbackLedger,
        instance: CoreInstance,
        create: Callable[[], CreatedResource],
    ) -> CreatedResource:
        try:
            self._check_cancel()
            created = create()
        except KeyboardInterrupt as exc:
            if self.cancel is not None:
                self.cancel.set()
            cancelled = ProvisioningCancelled(f"cancelled while creating {step.label}")
            raise self._fail(step, cancelled, ledger, instance) from exc
        except Exception as exc:
            raise self._fail(step, exc, ledger, instance) from exc
        ledger.append(created.descriptor)
        self._record(f"{step.name}.create", detail=str(created.descriptor))
        self._transition(step.state)
        return created

    def _fail(
        self,
        step: _Step,
        cause: BaseException,
        ledger: RollbackLedger,
        instance: CoreInstance,
    ) -> ProvisioningError:
        self._record(f"{step.name}.create", status="error", detail=str(cause))
        self.console.print(f"[red]could not create {step.label}[/red]: {cause}")
        self._transition(ProvisioningState.ROLLING_BACK, detail=len(ledger))

        report = RollbackReport()
        if self.cluster is not None and len(ledger):
            # A user-requested cancel still gets a full rollback attempt.
            rollback_cancel = None if isinstance(cause, ProvisioningCancelled) else self.cancel
            report = ledger.rollback_all(
                self.cluster,
                cancel=rollback_cancel,
                on_delete=self._record_rollback,
            )

        record_deleted: bool | None = None
        record_error: BaseException | None = None
        try:
            record_deleted = self.registrar.delete(instance.id)
            self._record("rollback.control-plane", detail=instance.id)
        except CloudError as exc:
            record_error = exc
            self._record("rollback.control-plane", status="error", detail=str(exc))
            LOGGER.warning("could not delete core instance %s: %s", instance.id, exc)

        self._transition(ProvisioningState.FAILED)
        return ProvisioningError(
            step.name,
            f"could not create {step.label}",
            cause=cause,
            rollback=report,
            record_deleted=record_deleted,
            record_error=record_error,
            instance_id=instance.id,
        )

    def _record_rollback(
        self,
        descriptor: ResourceDescriptor,
        error: BaseException | None,
    ) -> None:
        if error is None:
            self._record("rollback.delete", detail=str(descriptor))
        else:
            self._record("rollback.delete", status="error", detail=f"{descriptor}: {error}")

    def _render_dry_run(self, request: ProvisionRequest, images: SyncImages) -> ProvisioningResult:
        instance = CoreInstance(
            id="dry-run",
            name=request.name or "core-instance",
            environment_name=request.environment or DEFAULT_ENVIRONMENT,
            tags=request.tags,
        )
        ledger = RollbackLedger()
        secret = self.factory.create_secret(instance)
        role = self.factory.create_cluster_role(instance)
        account = self.factory.create_service_account(instance)
        binding = self.factory.create_cluster_role_binding(instance, role, account)
        deployment = self.factory.create_deployment(instance, account, images, request.options)
        self._transition(ProvisioningState.READY, detail="dry-run")
        return ProvisioningResult(
            instance=instance,
            images=images,
            resources=[secret, role, account, binding, deployment],
            ledger=ledger,
            history=list(self.history),
            dry_run=True,
        )


__all__ = [
    "InvalidUpdate",
    "ProvisionRequest",
    "ProvisioningCancelled",
    "ProvisioningError",
    "ProvisioningOrchestrator",
    "ProvisioningResult",
    "UpdateRequest",
    "UpdateResult",
    "WaitTimeout",
]
