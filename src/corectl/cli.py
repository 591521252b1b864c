"""Typer-powered command line for ``corectl``.

Three resource commands are exposed, each under a ``core_instance`` group:

* ``create core_instance operator`` registers a core instance with the
  control-plane and provisions its cluster objects, rolling back on failure.
* ``update core_instance operator`` changes the record and rolls the sync
  deployment to a new version.
* ``delete core_instance operator`` removes the record and reaps every
  cluster object carrying the instance label.

Every command runs inside a :class:`~corectl.logging.OperationScope` so the
JSON operations log captures its steps and outcome.
"""
from __future__ import annotations

import sys
import textwrap
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .providers import (
    CloudClient,
    CloudError,
    ClusterConnectionError,
    ClusterError,
    KubernetesProvider,
    VersionCatalog,
    VersionCatalogError,
)
from .providers.kubernetes import DEFAULT_NAMESPACE
from .provisioning import (
    ClusterResourceFactory,
    CoreInstanceRegistrar,
    DeploymentOptions,
    InvalidUpdate,
    InvalidVersion,
    ProvisioningCancelled,
    ProvisioningError,
    ProvisioningOrchestrator,
    ProvisionRequest,
    ReapError,
    ResourceReaper,
    UpdateRequest,
    VersionNotPublished,
    VersionResolver,
    WaitTimeout,
    instance_selector,
)
from .provisioning.factory import parse_annotations, parse_tolerations

console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)

HEALTH_CHECK_SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to corectl's YAML config file.",
)
VERSION_OPTION = typer.Option(
    None,
    "--version",
    help="Core instance version (e.g. v2.14.0); defaults to the configured tag.",
)
ENVIRONMENT_OPTION = typer.Option(
    None,
    "--environment",
    help="Control-plane environment name.",
)
SKIP_SERVICE_CREATION_OPTION = typer.Option(
    False,
    "--skip-service-creation",
    help="Do not create kubernetes services for pipelines.",
)
NO_TLS_VERIFY_OPTION = typer.Option(
    False,
    "--no-tls-verify",
    help="Disable TLS verification from the sync containers to the control-plane.",
)
CLOUD_PROXY_OPTION = typer.Option(
    None,
    "--cloud-proxy",
    help="Proxy used by the sync containers to reach the control-plane.",
)
HTTP_PROXY_OPTION = typer.Option(None, "--http-proxy", help="HTTP_PROXY for the sync containers.")
HTTPS_PROXY_OPTION = typer.Option(
    None, "--https-proxy", help="HTTPS_PROXY for the sync containers."
)
NO_PROXY_OPTION = typer.Option(None, "--no-proxy", help="NO_PROXY for the sync containers.")
WAIT_OPTION = typer.Option(
    False,
    "--wait",
    help="Wait for the sync deployment to become ready.",
)
TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    help="Seconds to wait for readiness (defaults to wait.timeout).",
)
KUBECONFIG_OPTION = typer.Option(
    None,
    "--kubeconfig",
    dir_okay=False,
    help="Path to the kubeconfig file.",
)
KUBE_CONTEXT_OPTION = typer.Option(None, "--kube-context", help="Kubeconfig context to use.")
KUBE_NAMESPACE_OPTION = typer.Option(
    None,
    "--kube-namespace",
    help="Namespace for the core instance objects.",
)

# Errors surfaced to the user with a mapped exit code.
_HANDLED_ERRORS = (
    ConfigError,
    CloudError,
    ClusterError,
    VersionCatalogError,
    ProvisioningError,
    ProvisioningCancelled,
    ReapError,
    WaitTimeout,
    LookupError,
    ValueError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Calyptia Core instance operator CLI.

        Registers core instances with the control-plane and provisions (or
        tears down) their kubernetes objects.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    cloud_url: str | None = None,
    token: str | None = None,
    verbose: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    cloud_overrides: dict[str, object] = {}
    if cloud_url:
        cloud_overrides["base_url"] = cloud_url
    if token:
        cloud_overrides["token"] = token
        cloud_overrides["project_id"] = None
    overrides: dict[str, object] = {"cloud": cloud_overrides} if cloud_overrides else {}

    configure_console_logging(verbose)
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the corectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    cloud_url: str | None = typer.Option(
        None,
        "--cloud-url",
        help="Override the control-plane base URL.",
    ),
    token: str | None = typer.Option(
        None,
        "--token",
        help="Project token used to authenticate against the control-plane.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Emit debug diagnostics on standard error.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(
        ctx, config_file, cloud_url=cloud_url, token=token, verbose=verbose
    )
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"corectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]", markup=True, highlight=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, WaitTimeout):
        return ExitCode.TIMEOUT
    if isinstance(exc, ClusterConnectionError):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, ProvisioningError):
        if exc.step == "preflight" and exc.cause is None:
            return ExitCode.VALIDATION
        if exc.step == "operator" and exc.cause is None:
            return ExitCode.ENVIRONMENT
        if isinstance(exc.cause, ClusterConnectionError):
            return ExitCode.ENVIRONMENT
        return ExitCode.PROVIDER
    if isinstance(exc, (ConfigError, InvalidVersion, VersionNotPublished, InvalidUpdate)):
        return ExitCode.VALIDATION
    if isinstance(
        exc, (CloudError, ClusterError, VersionCatalogError, ReapError, ProvisioningCancelled)
    ):
        return ExitCode.PROVIDER
    return ExitCode.VALIDATION


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    _command_error(op, str(exc), rc=_exit_code_for(exc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: dict[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    err_console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _connect_cluster(
    runtime: RuntimeContext,
    *,
    kubeconfig: Path | None,
    context: str | None,
    namespace: str | None,
) -> KubernetesProvider:
    """Connect to the cluster, flags first and then the configured defaults."""
    defaults = runtime.config.kubernetes
    return KubernetesProvider.connect(
        kubeconfig=kubeconfig or defaults.kubeconfig,
        context=context or defaults.context,
        namespace=namespace or defaults.namespace,
    )


def _connect_cloud(runtime: RuntimeContext) -> CloudClient:
    """Return a control-plane client for the configured project token."""
    cloud = runtime.config.cloud
    if not cloud.token:
        raise ConfigError("a project token is required: pass --token or set CORECTL_CLOUD__TOKEN")
    return CloudClient(
        cloud.base_url,
        cloud.token,
        timeout=cloud.request_timeout,
        verify=cloud.verify_tls,
    )


def _open_catalog(runtime: RuntimeContext) -> VersionCatalog:
    """Return the catalog of published operator image tags."""
    versions = runtime.config.versions
    return VersionCatalog(versions.index_url, cache_path=versions.cache_file)


def _project_id(runtime: RuntimeContext) -> str:
    project_id = runtime.config.cloud.project_id
    if not project_id:
        raise ConfigError("could not determine the project ID from the project token")
    return project_id


def _deployment_options(
    runtime: RuntimeContext,
    *,
    no_tls_verify: bool,
    skip_service_creation: bool,
    cloud_proxy: str | None,
    http_proxy: str | None,
    https_proxy: str | None,
    no_proxy: str | None,
    metrics: bool = False,
    metrics_port: int = 15334,
    memory_limit: str = "512Mi",
    annotations: str | None = None,
    tolerations: str | None = None,
    core_cloud_url: str | None = None,
) -> DeploymentOptions:
    cloud = runtime.config.cloud
    return DeploymentOptions(
        cloud_url=core_cloud_url or cloud.base_url,
        token=cloud.token or "",
        no_tls_verify=no_tls_verify,
        skip_service_creation=skip_service_creation,
        metrics=metrics,
        metrics_port=metrics_port,
        memory_limit=memory_limit,
        annotations=parse_annotations(annotations),
        tolerations=parse_tolerations(tolerations),
        cloud_proxy=cloud_proxy,
        http_proxy=http_proxy,
        https_proxy=https_proxy,
        no_proxy=no_proxy,
    )


def _build_orchestrator(
    runtime: RuntimeContext,
    *,
    dry_run: bool = False,
    kubeconfig: Path | None = None,
    kube_context: str | None = None,
    kube_namespace: str | None = None,
) -> tuple[ProvisioningOrchestrator, CoreInstanceRegistrar]:
    """Wire the provisioning components for one invocation."""
    config = runtime.config
    cloud = _connect_cloud(runtime)
    project_id = _project_id(runtime)
    resolver = VersionResolver(_open_catalog(runtime))
    cluster: KubernetesProvider | None = None
    if dry_run:
        namespace = kube_namespace or config.kubernetes.namespace or DEFAULT_NAMESPACE
    else:
        cluster = _connect_cluster(
            runtime, kubeconfig=kubeconfig, context=kube_context, namespace=kube_namespace
        )
        namespace = cluster.namespace
    registrar = CoreInstanceRegistrar(cloud, project_id=project_id, cluster=cluster)
    factory = ClusterResourceFactory(
        cluster, namespace=namespace, project_id=project_id, dry_run=dry_run
    )
    orchestrator = ProvisioningOrchestrator(
        resolver=resolver,
        registrar=registrar,
        factory=factory,
        cluster=cluster,
        images=config.images,
        default_tag=config.versions.default_tag,
        console=err_console,
        cancel=threading.Event(),
    )
    return orchestrator, registrar


def _render_manifests(manifests: list[dict[str, object]]) -> str:
    documents = [yaml.safe_dump(manifest, sort_keys=False) for manifest in manifests]
    return "---\n".join(documents)


# ----------------------------------------------------------------------
# Command groups
create_app = typer.Typer(help="Create resources.")
update_app = typer.Typer(help="Update resources.")
delete_app = typer.Typer(help="Delete resources.")
config_app = typer.Typer(help="Inspect the effective configuration.")

core_instance_create_app = typer.Typer(help="Create core instances.")
core_instance_update_app = typer.Typer(help="Update core instances.")
core_instance_delete_app = typer.Typer(help="Delete core instances.")

for _group, _core_instance_app in (
    (create_app, core_instance_create_app),
    (update_app, core_instance_update_app),
    (delete_app, core_instance_delete_app),
):
    _group.add_typer(_core_instance_app, name="core_instance")
    _group.add_typer(_core_instance_app, name="core_instances", hidden=True)
    _group.add_typer(_core_instance_app, name="ci", hidden=True)

app.add_typer(create_app, name="create")
app.add_typer(update_app, name="update")
app.add_typer(delete_app, name="delete")
app.add_typer(config_app, name="config")


@core_instance_create_app.command("operator")
def create_core_instance_operator(
    ctx: typer.Context,
    name: str | None = typer.Option(
        None,
        "--name",
        help="Core instance name (the control-plane generates one when omitted).",
    ),
    version: str | None = VERSION_OPTION,
    environment: str | None = ENVIRONMENT_OPTION,
    tags: str | None = typer.Option(None, "--tags", help="Comma separated tags."),
    no_health_check_pipeline: bool = typer.Option(
        False,
        "--no-health-check-pipeline",
        help="Do not create the health-check pipeline.",
    ),
    health_check_pipeline_port: int | None = typer.Option(
        None,
        "--health-check-pipeline-port-number",
        help="Port of the health-check pipeline (1-65535).",
    ),
    health_check_pipeline_service_type: str | None = typer.Option(
        None,
        "--health-check-pipeline-service-type",
        help="Service type of the health-check pipeline (ClusterIP, NodePort, LoadBalancer).",
    ),
    enable_cluster_logging: bool = typer.Option(
        False,
        "--enable-cluster-logging",
        help="Enable the cluster logging pipeline.",
    ),
    skip_service_creation: bool = SKIP_SERVICE_CREATION_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Render the kubernetes manifests without applying anything.",
    ),
    wait: bool = WAIT_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
    no_tls_verify: bool = NO_TLS_VERIFY_OPTION,
    metrics: bool = typer.Option(False, "--metrics", help="Expose sync metrics."),
    metrics_port: int = typer.Option(15334, "--metrics-port", help="Port of the metrics endpoint."),
    memory_limit: str = typer.Option(
        "512Mi",
        "--memory-limit",
        help="Memory limit of each sync container.",
    ),
    cloud_proxy: str | None = CLOUD_PROXY_OPTION,
    http_proxy: str | None = HTTP_PROXY_OPTION,
    https_proxy: str | None = HTTPS_PROXY_OPTION,
    no_proxy: str | None = NO_PROXY_OPTION,
    annotations: str | None = typer.Option(
        None,
        "--annotations",
        help="Pod annotations as key=value pairs separated by commas.",
    ),
    tolerations: str | None = typer.Option(
        None,
        "--tolerations",
        help="Pod tolerations as key=Operator:value:Effect[:seconds] separated by commas.",
    ),
    fluent_bit_image: str | None = typer.Option(
        None,
        "--fluent-bit-image",
        help="Fluent Bit image used by the pipelines of this instance.",
    ),
    core_cloud_url: str | None = typer.Option(
        None,
        "--core-cloud-url",
        help="Control-plane URL used by the sync containers (defaults to cloud.base_url).",
    ),
    image_to_cloud: str | None = typer.Option(
        None,
        "--image-to-cloud",
        hidden=True,
        help="Fully composed sync-to-cloud image.",
    ),
    image_from_cloud: str | None = typer.Option(
        None,
        "--image-from-cloud",
        hidden=True,
        help="Fully composed sync-from-cloud image.",
    ),
    kube_context: str | None = KUBE_CONTEXT_OPTION,
    kube_namespace: str | None = KUBE_NAMESPACE_OPTION,
    kubeconfig: Path | None = KUBECONFIG_OPTION,
) -> None:
    """Register a core instance and provision its kubernetes objects."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "create core_instance operator",
        args={
            "name": name,
            "version": version,
            "environment": environment,
            "dry_run": dry_run,
            "wait": wait,
        },
        target={"kind": "core_instance", "name": name or ""},
    ) as op:
        if no_health_check_pipeline:
            health_check_pipeline_port = None
            health_check_pipeline_service_type = None
        if health_check_pipeline_port is not None and not 1 <= health_check_pipeline_port <= 65535:
            _command_error(
                op, "--health-check-pipeline-port-number must be between 1 and 65535"
            )
        if (
            health_check_pipeline_service_type is not None
            and health_check_pipeline_service_type not in HEALTH_CHECK_SERVICE_TYPES
        ):
            allowed = ", ".join(HEALTH_CHECK_SERVICE_TYPES)
            _command_error(
                op,
                f"invalid health-check pipeline service type "
                f"{health_check_pipeline_service_type!r}; expected one of {allowed}",
            )
        if core_cloud_url is not None and not core_cloud_url.startswith(("http://", "https://")):
            _command_error(op, "--core-cloud-url must be an http(s) URL")
        try:
            options = _deployment_options(
                runtime,
                no_tls_verify=no_tls_verify,
                skip_service_creation=skip_service_creation,
                cloud_proxy=cloud_proxy,
                http_proxy=http_proxy,
                https_proxy=https_proxy,
                no_proxy=no_proxy,
                metrics=metrics,
                metrics_port=metrics_port,
                memory_limit=memory_limit,
                annotations=annotations,
                tolerations=tolerations,
                core_cloud_url=core_cloud_url,
            )
            orchestrator, _ = _build_orchestrator(
                runtime,
                dry_run=dry_run,
                kubeconfig=kubeconfig,
                kube_context=kube_context,
                kube_namespace=kube_namespace,
            )
            request = ProvisionRequest(
                name=name,
                options=options,
                version=version,
                environment=environment,
                tags=tuple(tag.strip() for tag in (tags or "").split(",") if tag.strip()),
                add_health_check_pipeline=not no_health_check_pipeline,
                health_check_pipeline_port=health_check_pipeline_port,
                health_check_pipeline_service_type=health_check_pipeline_service_type,
                cluster_logging=enable_cluster_logging,
                fluent_bit_image=fluent_bit_image,
                image_to_cloud=image_to_cloud,
                image_from_cloud=image_from_cloud,
            )
            result = orchestrator.provision(request, op=op)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        if result.dry_run:
            console.print(
                _render_manifests(result.manifests), markup=False, highlight=False, end=""
            )
            _dry_run_complete(
                op,
                f"rendered {len(result.manifests)} kubernetes manifests; nothing was applied.",
                context={"images": result.images.as_list()},
            )
            return

        console.print("Core instance created successfully")
        console.print(f"Deployment images: {', '.join(result.images.as_list())}", highlight=False)
        for resource in result.resources:
            console.print(
                f"{resource.descriptor.kind.api_kind}={resource.descriptor.name}",
                highlight=False,
            )

        if wait:
            try:
                orchestrator.wait_ready(
                    result.deployment,
                    timeout=timeout or runtime.config.wait.timeout,
                    poll_interval=runtime.config.wait.poll_interval,
                )
            except _HANDLED_ERRORS as exc:
                _fail(op, exc)
            console.print(f"Deployment {result.deployment.name} is ready")

        op.success(
            "Core instance created.",
            changed=len(result.resources),
            context={
                "id": result.instance.id,
                "name": result.instance.name,
                "resources": [resource.descriptor.to_dict() for resource in result.resources],
            },
        )


@core_instance_update_app.command("operator")
def update_core_instance_operator(
    ctx: typer.Context,
    core_instance: str = typer.Argument(..., help="Core instance name or ID."),
    version: str | None = VERSION_OPTION,
    name: str | None = typer.Option(None, "--name", help="New core instance name."),
    environment: str | None = ENVIRONMENT_OPTION,
    enable_cluster_logging: bool = typer.Option(
        False,
        "--enable-cluster-logging",
        help="Enable the cluster logging pipeline.",
    ),
    disable_cluster_logging: bool = typer.Option(
        False,
        "--disable-cluster-logging",
        help="Disable the cluster logging pipeline.",
    ),
    skip_service_creation: bool = SKIP_SERVICE_CREATION_OPTION,
    no_tls_verify: bool = NO_TLS_VERIFY_OPTION,
    cloud_proxy: str | None = CLOUD_PROXY_OPTION,
    http_proxy: str | None = HTTP_PROXY_OPTION,
    https_proxy: str | None = HTTPS_PROXY_OPTION,
    no_proxy: str | None = NO_PROXY_OPTION,
    wait: bool = WAIT_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
    kube_context: str | None = KUBE_CONTEXT_OPTION,
    kube_namespace: str | None = KUBE_NAMESPACE_OPTION,
    kubeconfig: Path | None = KUBECONFIG_OPTION,
) -> None:
    """Update a core instance and roll its sync deployment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update core_instance operator",
        args={"version": version, "name": name, "environment": environment, "wait": wait},
        target={"kind": "core_instance", "name": core_instance},
    ) as op:
        try:
            options = _deployment_options(
                runtime,
                no_tls_verify=no_tls_verify,
                skip_service_creation=skip_service_creation,
                cloud_proxy=cloud_proxy,
                http_proxy=http_proxy,
                https_proxy=https_proxy,
                no_proxy=no_proxy,
            )
            orchestrator, registrar = _build_orchestrator(
                runtime,
                kubeconfig=kubeconfig,
                kube_context=kube_context,
                kube_namespace=kube_namespace,
            )
            environment_id = (
                registrar.resolve_environment_id(environment) if environment else None
            )
            instance_id = registrar.resolve_instance_id(
                core_instance, environment_id=environment_id
            )
            op.add_step("control-plane.resolve", detail=instance_id)
            result = orchestrator.update(
                UpdateRequest(
                    instance_key=core_instance,
                    instance_id=instance_id,
                    options=options,
                    new_name=name,
                    version=version,
                    enable_cluster_logging=enable_cluster_logging,
                    disable_cluster_logging=disable_cluster_logging,
                    skip_service_creation=skip_service_creation,
                ),
                op=op,
            )
            if wait:
                orchestrator.wait_ready(
                    result.deployment.descriptor,
                    timeout=timeout or runtime.config.wait.timeout,
                    poll_interval=runtime.config.wait.poll_interval,
                )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        console.print(f"core instance version updated to version {result.version}")
        op.success(
            "Core instance updated.",
            changed=1,
            context={"id": result.instance_id, "version": result.version},
        )


@core_instance_delete_app.command("operator")
def delete_core_instance_operator(
    ctx: typer.Context,
    core_instance: str = typer.Argument(..., help="Core instance name or ID."),
    environment: str | None = ENVIRONMENT_OPTION,
    skip_error: bool = typer.Option(
        False,
        "--skip-error",
        help="Keep deleting other resource kinds when one fails.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Delete without asking for confirmation.",
    ),
    kube_context: str | None = KUBE_CONTEXT_OPTION,
    kubeconfig: Path | None = KUBECONFIG_OPTION,
) -> None:
    """Delete a core instance and reap its kubernetes objects."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "delete core_instance operator",
        args={"environment": environment, "skip_error": skip_error, "yes": yes},
        target={"kind": "core_instance", "name": core_instance},
    ) as op:
        try:
            registrar = CoreInstanceRegistrar(
                _connect_cloud(runtime), project_id=_project_id(runtime)
            )
            environment_id = (
                registrar.resolve_environment_id(environment) if environment else None
            )
            instance_id = registrar.resolve_instance_id(
                core_instance, environment_id=environment_id
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        op.add_step("control-plane.resolve", detail=instance_id)

        if not yes and sys.stdin.isatty():
            confirmed = typer.confirm(
                f"Delete core instance {core_instance!r} and all of its kubernetes resources?",
                default=False,
            )
            if not confirmed:
                console.print("Deletion cancelled.")
                op.warning("Deletion cancelled by user.", warnings=["cancelled"])
                return

        try:
            cluster = _connect_cluster(
                runtime, kubeconfig=kubeconfig, context=kube_context, namespace=None
            )
            if registrar.delete(instance_id):
                op.add_step("control-plane.delete", detail=instance_id)
            else:
                console.print(
                    f"[yellow]core instance {core_instance} was already deleted "
                    "from the control-plane[/yellow]"
                )
                op.add_step("control-plane.delete", status="skipped", detail="not-found")

            reaper = ResourceReaper(cluster, console=console)
            selector = instance_selector(instance_id)
            plan = reaper.plan(selector, skip_errors=skip_error)
            op.add_step("reap.list", detail=len(plan))
            if plan.empty and not plan.failures:
                console.print("No kubernetes resources to delete")
                op.success("Core instance deleted.", changed=1, context={"id": instance_id})
                return
            report = reaper.reap(selector, skip_errors=skip_error, plan=plan)
            op.add_step(
                "reap.delete",
                status="warning" if report.failures else "success",
                detail=f"{report.deleted}/{report.planned}",
            )
            report.raise_for_failures()
        except ReapError as exc:
            _command_error(
                op,
                str(exc),
                rc=ExitCode.PROVIDER,
                errors=[str(failure) for failure in exc.failures],
            )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        console.print(f"Successfully deleted {report.deleted} kubernetes resources")
        op.success(
            "Core instance deleted.",
            changed=report.deleted + 1,
            context={"id": instance_id, "deleted": report.deleted},
        )


core_instance_create_app.command("opr", hidden=True)(create_core_instance_operator)
core_instance_update_app.command("opr", hidden=True)(update_core_instance_operator)
core_instance_delete_app.command("opr", hidden=True)(delete_core_instance_operator)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Section", style="bold")
        table.add_column("Key")
        table.add_column("Value")
        for section, value in data.items():
            if isinstance(value, dict):
                for key, item in value.items():
                    table.add_row(section, key, "" if item is None else str(item))
            else:
                table.add_row(section, "", str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
