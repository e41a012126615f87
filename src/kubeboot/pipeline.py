"""The bootstrap pipeline: role-branching, strictly ordered, fail-fast.

Stages run one after another; each reports a tagged :class:`StageResult`.
A stage that raises is turned into a fatal result here and nowhere else. The
first fatal result stops the run in the ``Aborted`` state. Nothing is rolled
back: every stage is idempotent, so the fix is to correct the input and run
the pipeline again.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .addons import AddonInstaller
from .bootstrap.filesystem import DirectorySpec, ensure_directories
from .bootstrap.firewall import FirewallConfigurator
from .bootstrap.storage import FilesystemPreparer
from .commands import CommandError, Runner, run_command
from .config import BootSettings, Configuration
from .credentials import CredentialProvisioner, CredentialReport
from .exit_codes import ExitCode
from .images import ImageLoader
from .logging import StructuredLogger
from .manifests import InstalledManifest, ManifestTemplater
from .motd import reset_motd
from .providers.docker import DockerProvider
from .providers.metadata import MetadataClient
from .providers.systemd import SystemdProvider
from .retry import RetryExecutor
from .role import Role, resolve_role
from .services import ServiceStarter
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Milestones reached by the pipeline."""

    INIT = "Init"
    FIREWALL_CONFIGURED = "FirewallConfigured"
    DIRS_CREATED = "DirsCreated"
    DISK_MOUNTED = "DiskMounted"
    AUTH_CREATED = "AuthCreated"
    KUBECONFIGS_CREATED = "KubeconfigsCreated"
    RUNTIME_CONFIGURED = "RuntimeConfigured"
    IMAGES_LOADED = "ImagesLoaded"
    AGENT_STARTED = "AgentStarted"
    STORE_STARTED = "StoreStarted"
    API_SERVER_STARTED = "ApiServerStarted"
    CONTROLLER_MANAGER_STARTED = "ControllerManagerStarted"
    SCHEDULER_STARTED = "SchedulerStarted"
    ADDONS_STARTED = "AddonsStarted"
    AUTOSCALER_STARTED = "AutoscalerStarted"
    INGRESS_STARTED = "IngressStarted"
    PROXY_STARTED = "ProxyStarted"
    LOGGING_STARTED = "LoggingStarted"
    DONE = "Done"
    ABORTED = "Aborted"


class StageStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class StageResult:
    """Outcome of one stage."""

    status: StageStatus
    detail: str = ""
    changed: int = 0
    error: BaseException | None = None

    @classmethod
    def success(cls, detail: str = "", *, changed: int = 0) -> StageResult:
        return cls(StageStatus.SUCCESS, detail, changed)

    @classmethod
    def skipped(cls, detail: str) -> StageResult:
        return cls(StageStatus.SKIPPED, detail)

    @classmethod
    def fatal(cls, detail: str, *, error: BaseException | None = None) -> StageResult:
        return cls(StageStatus.FATAL, detail, error=error)

    @property
    def is_fatal(self) -> bool:
        return self.status is StageStatus.FATAL


@dataclass(slots=True)
class BootContext:
    """Everything a stage may use; built once per run."""

    config: Configuration
    settings: BootSettings
    role: Role
    templates: TemplateEngine
    templater: ManifestTemplater
    systemd: SystemdProvider
    docker: DockerProvider
    metadata: MetadataClient
    firewall: FirewallConfigurator
    storage: FilesystemPreparer
    credentials: CredentialProvisioner
    images: ImageLoader
    services: ServiceStarter
    addons: AddonInstaller
    runner: Runner = run_command


def build_context(
    config: Configuration,
    settings: BootSettings,
    *,
    role: Role | None = None,
    runner: Runner = run_command,
    sleep: Callable[[float], None] = time.sleep,
) -> BootContext:
    """Wire the providers and components for *config* and *settings*."""
    paths = settings.paths
    binaries = settings.binaries
    templates = TemplateEngine.with_overrides(settings.templates_dir)
    templater = ManifestTemplater()
    systemd = SystemdProvider(
        templates=templates,
        defaults_dir=paths.defaults_dir,
        systemctl_bin=binaries.systemctl,
        runner=runner,
    )
    docker = DockerProvider(systemd=systemd, docker_bin=binaries.docker, runner=runner)
    metadata = MetadataClient(
        url=settings.metadata.url, policy=settings.metadata.retry, sleep=sleep
    )
    return BootContext(
        config=config,
        settings=settings,
        role=role or resolve_role(config),
        templates=templates,
        templater=templater,
        systemd=systemd,
        docker=docker,
        metadata=metadata,
        firewall=FirewallConfigurator(iptables_bin=binaries.iptables, runner=runner),
        storage=FilesystemPreparer(disk=settings.disk, paths=paths, runner=runner),
        credentials=CredentialProvisioner(config=config, paths=paths, templates=templates),
        images=ImageLoader(
            docker=docker,
            docker_files=paths.docker_files,
            policy=settings.images,
            executor=RetryExecutor(settings.images, retry_on=(CommandError,), sleep=sleep),
        ),
        services=ServiceStarter(
            config=config,
            settings=settings,
            templater=templater,
            systemd=systemd,
            metadata=metadata,
        ),
        addons=AddonInstaller(config=config, paths=paths, templater=templater),
        runner=runner,
    )


# ----------------------------------------------------------------------------
# Stages


def _manifest_result(installed: InstalledManifest | None, skip_reason: str) -> StageResult:
    if installed is None:
        return StageResult.skipped(skip_reason)
    return StageResult.success(str(installed.destination), changed=int(installed.changed))


def _credential_result(report: CredentialReport) -> StageResult:
    detail = f"{len(report.written)} written, {len(report.preserved)} preserved"
    if report.removed:
        detail += f", {len(report.removed)} removed"
    return StageResult.success(detail, changed=report.changed)


def configure_firewall(ctx: BootContext) -> StageResult:
    result = ctx.firewall.configure()
    if not result.opened:
        return StageResult.success("no chain drops traffic")
    return StageResult.success(f"opened {', '.join(result.opened)}", changed=len(result.rules))


def create_dirs(ctx: BootContext) -> StageResult:
    paths = ctx.settings.paths
    specs = [DirectorySpec(paths.kubelet_dir), DirectorySpec(paths.manifests_dir)]
    if not ctx.role.is_control_plane:
        specs.append(DirectorySpec(paths.kube_proxy_dir))
    plan = ensure_directories(specs)
    if plan.warnings:
        return StageResult.fatal("; ".join(plan.warnings))
    return StageResult.success(changed=len(plan.actions))


def mount_disk(ctx: BootContext) -> StageResult:
    result = ctx.storage.prepare()
    if not result.mounted:
        return StageResult.skipped(f"no persistent disk at {ctx.settings.disk.device}")
    return StageResult.success(f"{result.device} mounted at {result.mount_point}", changed=1)


def create_master_auth(ctx: BootContext) -> StageResult:
    report = ctx.credentials.create_master_auth()
    ctx.credentials.create_master_kubelet_auth(report)
    return _credential_result(report)


def create_kubeconfigs(ctx: BootContext) -> StageResult:
    report = ctx.credentials.create_kubelet_kubeconfig()
    ctx.credentials.create_kube_proxy_kubeconfig(report)
    return _credential_result(report)


def configure_runtime(ctx: BootContext) -> StageResult:
    changed = ctx.docker.write_daemon_flags(ctx.config)
    return StageResult.success(changed=int(changed))


def load_images(ctx: BootContext) -> StageResult:
    result = ctx.images.load(ctx.role)
    detail = ", ".join(f"{name} ({count})" for name, count in result.attempts.items())
    return StageResult.success(detail, changed=len(result.attempts))


def start_agent(ctx: BootContext) -> StageResult:
    changed = ctx.services.start_kubelet(ctx.role)
    return StageResult.success("kubelet.service started", changed=int(changed))


def start_store(ctx: BootContext) -> StageResult:
    installed = ctx.services.start_etcd_servers()
    return StageResult.success(
        ", ".join(item.destination.name for item in installed),
        changed=sum(int(item.changed) for item in installed),
    )


def start_apiserver(ctx: BootContext) -> StageResult:
    return _manifest_result(ctx.services.start_kube_apiserver(), "")


def start_controller_manager(ctx: BootContext) -> StageResult:
    return _manifest_result(ctx.services.start_kube_controller_manager(), "")


def start_scheduler(ctx: BootContext) -> StageResult:
    return _manifest_result(ctx.services.start_kube_scheduler(), "")


def start_addons(ctx: BootContext) -> StageResult:
    report = ctx.addons.install()
    detail = ", ".join(report.addons) or "addon manager only"
    return StageResult.success(detail, changed=len(report.addons) + 1)


def start_autoscaler(ctx: BootContext) -> StageResult:
    return _manifest_result(
        ctx.services.start_cluster_autoscaler(), "node autoscaling disabled"
    )


def start_ingress(ctx: BootContext) -> StageResult:
    return _manifest_result(ctx.services.start_lb_controller(), "L7 load balancing disabled")


def start_proxy(ctx: BootContext) -> StageResult:
    installed = ctx.services.start_kube_proxy()
    registry = ctx.services.start_registry_proxy()
    detail = str(installed.destination)
    if registry is not None:
        detail += f", {registry.destination}"
    changed = int(installed.changed) + int(registry.changed if registry else False)
    return StageResult.success(detail, changed=changed)


def start_logging(ctx: BootContext) -> StageResult:
    return _manifest_result(ctx.services.start_fluentd(), "node logging disabled")


def finish(ctx: BootContext) -> StageResult:
    paths = ctx.settings.paths
    try:
        changed = reset_motd(
            ctx.templates,
            paths.etc_dir / "motd",
            kubelet_bin=ctx.settings.binaries.kubelet,
            licenses_path=paths.kube_home / "LICENSES",
            runner=ctx.runner,
        )
    except CommandError as exc:
        LOGGER.warning("Login banner left unchanged: %s", exc)
        return StageResult.skipped(f"kubelet version unavailable: {exc}")
    return StageResult.success("login banner updated", changed=int(changed))


BOTH_ROLES = frozenset(Role)
CONTROL_PLANE_ONLY = frozenset({Role.CONTROL_PLANE})
WORKER_ONLY = frozenset({Role.WORKER})


@dataclass(frozen=True, slots=True)
class Stage:
    """A named pipeline step and the state it reaches on success."""

    name: str
    state: PipelineState
    run: Callable[[BootContext], StageResult]
    roles: frozenset[Role] = BOTH_ROLES


STAGES: tuple[Stage, ...] = (
    Stage("firewall", PipelineState.FIREWALL_CONFIGURED, configure_firewall),
    Stage("dirs", PipelineState.DIRS_CREATED, create_dirs),
    Stage("disk", PipelineState.DISK_MOUNTED, mount_disk, CONTROL_PLANE_ONLY),
    Stage("auth", PipelineState.AUTH_CREATED, create_master_auth, CONTROL_PLANE_ONLY),
    Stage("kubeconfigs", PipelineState.KUBECONFIGS_CREATED, create_kubeconfigs, WORKER_ONLY),
    Stage("runtime", PipelineState.RUNTIME_CONFIGURED, configure_runtime),
    Stage("images", PipelineState.IMAGES_LOADED, load_images),
    Stage("agent", PipelineState.AGENT_STARTED, start_agent),
    Stage("store", PipelineState.STORE_STARTED, start_store, CONTROL_PLANE_ONLY),
    Stage("apiserver", PipelineState.API_SERVER_STARTED, start_apiserver, CONTROL_PLANE_ONLY),
    Stage(
        "controller-manager",
        PipelineState.CONTROLLER_MANAGER_STARTED,
        start_controller_manager,
        CONTROL_PLANE_ONLY,
    ),
    Stage("scheduler", PipelineState.SCHEDULER_STARTED, start_scheduler, CONTROL_PLANE_ONLY),
    Stage("addons", PipelineState.ADDONS_STARTED, start_addons, CONTROL_PLANE_ONLY),
    Stage("autoscaler", PipelineState.AUTOSCALER_STARTED, start_autoscaler, CONTROL_PLANE_ONLY),
    Stage("ingress", PipelineState.INGRESS_STARTED, start_ingress, CONTROL_PLANE_ONLY),
    Stage("proxy", PipelineState.PROXY_STARTED, start_proxy, WORKER_ONLY),
    Stage("logging", PipelineState.LOGGING_STARTED, start_logging),
    Stage("motd", PipelineState.DONE, finish),
)


def stages_for(role: Role, stages: Sequence[Stage] = STAGES) -> list[Stage]:
    """Return the stages *role* runs, in execution order."""
    return [stage for stage in stages if role in stage.roles]


# ----------------------------------------------------------------------------
# Orchestrator


@dataclass(frozen=True, slots=True)
class StageOutcome:
    stage: str
    state: PipelineState
    result: StageResult


@dataclass(slots=True)
class PipelineReport:
    """Final state of a run and every stage outcome."""

    role: Role
    state: PipelineState = PipelineState.INIT
    outcomes: list[StageOutcome] = field(default_factory=list)

    @property
    def failure(self) -> StageOutcome | None:
        for outcome in self.outcomes:
            if outcome.result.is_fatal:
                return outcome
        return None

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.OK if self.state is PipelineState.DONE else ExitCode.FATAL


@dataclass(slots=True)
class PipelineOrchestrator:
    """Drive the stages for the resolved role in strict order."""

    context: BootContext
    logger: StructuredLogger
    stages: Sequence[Stage] = STAGES

    def plan(self) -> list[Stage]:
        """Return the stages that :meth:`run` would execute."""
        return stages_for(self.context.role, self.stages)

    def run(self) -> PipelineReport:
        """Execute the plan, stopping at the first fatal result."""
        ctx = self.context
        report = PipelineReport(role=ctx.role)
        LOGGER.info("Start to configure instance for kubernetes (%s)", ctx.role.value)
        with self.logger.operation(
            "configure",
            args={"role": ctx.role.value},
            target={"kind": "node", "env_file": ctx.config.source},
        ) as op:
            for stage in self.plan():
                result = self._execute(stage)
                report.outcomes.append(StageOutcome(stage.name, stage.state, result))
                op.add_step(stage.name, status=result.status.value, detail=result.detail or None)
                if result.is_fatal:
                    report.state = PipelineState.ABORTED
                    message = f"Stage {stage.name} failed: {result.detail}"
                    LOGGER.error(message)
                    op.error(
                        message,
                        rc=int(ExitCode.FATAL),
                        context={"state": report.state.value},
                    )
                    return report
                report.state = stage.state
            changed = sum(outcome.result.changed for outcome in report.outcomes)
            op.success(
                "Done for the configuration for kubernetes",
                changed=changed,
                context={"state": report.state.value},
            )
        LOGGER.info("Done for the configuration for kubernetes")
        return report

    def _execute(self, stage: Stage) -> StageResult:
        LOGGER.debug("Running stage %s", stage.name)
        try:
            return stage.run(self.context)
        except Exception as exc:  # noqa: BLE001 - every stage failure is fatal
            return StageResult.fatal(f"{exc.__class__.__name__}: {exc}", error=exc)


__all__ = [
    "BootContext",
    "PipelineOrchestrator",
    "PipelineReport",
    "PipelineState",
    "STAGES",
    "Stage",
    "StageOutcome",
    "StageResult",
    "StageStatus",
    "build_context",
    "stages_for",
]
