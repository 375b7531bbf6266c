"""Workspace startup/shutdown orchestrator.

Drives one start attempt through its stages:

    qemu -> ssh -> ssh_stable -> updates -> env -> docker -> api -> webui
         -> connection -> done

Each stage reports in_progress, then success or failed. Fatal failures end
the attempt with a ``reason=<tag>; ...`` message, kill the VM and release
its ports. Soft failures (docker, api) become warnings in the final
message.

Degraded mode: if SSH answers on the port but the command channel keeps
dropping with transient errors, the start skips the SSH-dependent stages
(env, docker, connection), returns success with status warming_up and
hands the workspace to the warmup scheduler, which promotes it to running
once SSH stabilizes.

Concurrency: one orchestrator per process. Starts of different workspaces
may overlap; host ports are reserved per start so two starts cannot race
for the same port. A second start of a workspace that is already starting
is refused.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.config import StartupConfig
from vm_workspaces.exceptions import (
    NetworkUnreachableError,
    PortBusyError,
    PortConflictError,
    ProcessLaunchError,
    StartCancelledError,
    WorkspaceError,
)
from vm_workspaces.guest_probes import REPO_MISSING_EXIT_CODE, GuestReadinessProbes
from vm_workspaces.models import Stage, StageState, StartOutcome, VmStatus, Workspace
from vm_workspaces.platform_utils import ProcessWrapper
from vm_workspaces.port_reservation import PortReservation, PortReservationManager
from vm_workspaces.process_registry import ProcessRegistry
from vm_workspaces.progress import ProgressSink, StartupProgressReporter, StartupReason
from vm_workspaces.resource_cleanup import cancel_task
from vm_workspaces.serial_diagnostics import SerialDiagnosticsReader
from vm_workspaces.settings import Settings
from vm_workspaces.ssh_runner import KnownHostStore, ParamikoConnector, SshCommandRunner, is_transient_connection_issue
from vm_workspaces.store import WorkspaceStore
from vm_workspaces.subprocess_utils import log_task_exception
from vm_workspaces.tcp_probe import wait_tcp
from vm_workspaces.vm_controller import VmProcessController
from vm_workspaces.warmup import WarmupRetryScheduler

logger = get_logger(__name__)

ReadyHook = Callable[[Workspace], Awaitable[None]]

CONNECTION_TEST_COMMAND = "echo connection-ok"
WARMUP_PROBE_COMMAND = "echo warmup-ready"

_SKIPPED_WARMING_UP = "Skipped for now (SSH warming up)."
_CLOUD_INIT_TAIL_LINES = 12


class _StageAbort(WorkspaceError):
    """Fatal stage failure; unwinds the start attempt to a single cleanup path."""

    def __init__(self, stage: Stage, reason: StartupReason, message: str):
        super().__init__(message, {"stage": stage.value, "reason": reason.value})
        self.stage = stage
        self.reason = reason


@dataclass
class _StartAttempt:
    workspace: Workspace
    reporter: StartupProgressReporter
    token: CancelToken
    reservation: PortReservation | None = None
    serial_token: CancelToken | None = None
    serial_task: asyncio.Task[None] | None = None
    degraded: bool = False
    repo_pending: bool = False
    warnings: list[str] = field(default_factory=list)


class WorkspaceStartupOrchestrator:
    """Starts and stops workspace VMs and tracks their lifecycle status."""

    def __init__(
        self,
        *,
        ports: PortReservationManager,
        controller: VmProcessController,
        runner: SshCommandRunner,
        probes: GuestReadinessProbes | None = None,
        serial: SerialDiagnosticsReader | None = None,
        warmup: WarmupRetryScheduler | None = None,
        store: WorkspaceStore | None = None,
        config: StartupConfig | None = None,
        ready_hooks: Sequence[ReadyHook] = (),
    ) -> None:
        self._config = config or StartupConfig()
        self._ports = ports
        self._controller = controller
        self._runner = runner
        self._probes = probes or GuestReadinessProbes(runner, self._config)
        self._serial = serial or SerialDiagnosticsReader()
        self._warmup = warmup or WarmupRetryScheduler(
            max_attempts=self._config.warmup_max_attempts,
            interval_seconds=self._config.warmup_interval_seconds,
        )
        self._store = store
        self._ready_hooks = list(ready_hooks)

    @classmethod
    def create(
        cls,
        *,
        settings: Settings | None = None,
        config: StartupConfig | None = None,
        store: WorkspaceStore | None = None,
        ready_hooks: Sequence[ReadyHook] = (),
    ) -> WorkspaceStartupOrchestrator:
        """Build an orchestrator with the real paramiko / QEMU collaborators."""
        settings = settings or Settings()
        config = config or StartupConfig()
        connector = ParamikoConnector(
            KnownHostStore(settings.resolved_known_hosts_file()),
            connect_timeout=config.ssh_connect_timeout_seconds,
            command_timeout=config.ssh_command_timeout_seconds,
        )
        controller = VmProcessController(
            settings,
            registry=ProcessRegistry(settings.resolved_process_registry_file()),
            stop_grace_seconds=config.stop_grace_seconds,
        )
        return cls(
            ports=PortReservationManager(),
            controller=controller,
            runner=SshCommandRunner(connector, config=config),
            store=store,
            config=config,
            ready_hooks=ready_hooks,
        )

    @property
    def controller(self) -> VmProcessController:
        return self._controller

    @property
    def ports(self) -> PortReservationManager:
        return self._ports

    @property
    def warmup(self) -> WarmupRetryScheduler:
        return self._warmup

    def add_ready_hook(self, hook: ReadyHook) -> None:
        """Register a coroutine run once the web UI answers (or warmup succeeds)."""
        self._ready_hooks.append(hook)

    async def __aenter__(self) -> WorkspaceStartupOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel warmup loops and kill every VM this orchestrator launched."""
        await self._warmup.cancel_all()
        await self._controller.shutdown()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        workspace: Workspace,
        sink: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> StartOutcome:
        """Run one start attempt for `workspace`.

        Args:
            workspace: Workspace to start; its status, ports and run flags
                are updated in place and saved after every transition.
            sink: Optional progress callback (stage updates and log lines).
            token: Cancellation token; cancelling it aborts the attempt,
                kills the VM and returns "Start cancelled.".

        Returns:
            StartOutcome. Failure messages carry a ``reason=<tag>;`` prefix.
        """
        token = token or CancelToken()
        reporter = StartupProgressReporter(sink, workspace_id=workspace.id)
        self._warmup.cancel(workspace.id)

        if self._ports.is_start_in_progress(workspace.id):
            return StartOutcome.fail(f"Workspace '{workspace.name}' is already starting.")
        self._ports.begin_start(workspace.id)
        # A refused start leaves the running VM and the workspace status untouched.
        try:
            conflict = await self._running_conflict(workspace)
        except BaseException:
            self._ports.end_start(workspace.id)
            raise
        if conflict is not None:
            self._ports.end_start(workspace.id)
            return reporter.fail(Stage.QEMU, StartupReason.STARTUP_FAILED, conflict)

        attempt = _StartAttempt(workspace=workspace, reporter=reporter, token=token)
        logger.info("Workspace start requested", extra={"workspace_id": workspace.id, "workspace": workspace.name})
        try:
            return await self._run_stages(attempt)
        except _StageAbort as e:
            await self._abort_vm(workspace, VmStatus.ERROR)
            return reporter.fail(e.stage, e.reason, e.message)
        except StartCancelledError as e:
            await self._abort_vm(workspace, VmStatus.STOPPED)
            reporter.stage(Stage.DONE, StageState.FAILED, e.message)
            logger.info("Workspace start cancelled", extra={"workspace_id": workspace.id})
            return StartOutcome.fail(e.message)
        except asyncio.CancelledError:
            await self._abort_vm(workspace, VmStatus.STOPPED)
            raise
        except Exception as e:
            logger.exception("Workspace start failed unexpectedly", extra={"workspace_id": workspace.id})
            await self._abort_vm(workspace, VmStatus.ERROR)
            return reporter.fail(Stage.DONE, StartupReason.STARTUP_FAILED, str(e) or type(e).__name__)
        finally:
            await self._stop_serial(attempt)
            self._ports.release_workspace(workspace.id)
            self._ports.end_start(workspace.id)

    async def _run_stages(self, attempt: _StartAttempt) -> StartOutcome:
        workspace = attempt.workspace
        workspace.status = VmStatus.STARTING
        await self._save(workspace)

        await self._launch_qemu(attempt)
        self._attach_serial(attempt)
        await self._wait_ssh_port(attempt)
        await self._wait_ssh_stable(attempt)
        await self._wait_repository(attempt)
        if attempt.degraded:
            attempt.reporter.stage(Stage.ENV, StageState.SUCCESS, _SKIPPED_WARMING_UP)
            attempt.reporter.stage(Stage.DOCKER, StageState.SUCCESS, _SKIPPED_WARMING_UP)
        else:
            await self._check_guest_storage(attempt)
            await self._wait_runtime_env(attempt)
            await self._wait_container_stack(attempt)
        await self._wait_api(attempt)
        await self._wait_web_ui(attempt)
        await self._connection_test(attempt)
        return await self._finish(attempt)

    # -- qemu -----------------------------------------------------------

    async def _launch_qemu(self, attempt: _StartAttempt) -> None:
        workspace, reporter = attempt.workspace, attempt.reporter
        reporter.stage(Stage.QEMU, StageState.IN_PROGRESS, "Checking host ports...")

        preflight = self._ports.ensure_start_ports_ready(workspace)
        if not preflight.success:
            raise _StageAbort(Stage.QEMU, StartupReason.PORT_CONFLICT, preflight.message)
        if "remapped" in preflight.message:
            reporter.log(preflight.message)
            await self._save(workspace)
        self._reserve(attempt)

        reporter.stage(Stage.QEMU, StageState.IN_PROGRESS, "Launching QEMU...")
        process = await self._spawn(attempt)
        await attempt.token.sleep(self._config.qemu_grace_seconds)

        if process.returncode is not None:
            # A UI-v2 collision is the one bind failure QEMU reports only by exiting.
            code = process.returncode
            await self._controller.kill(workspace.id, force=True)
            remap = self._ports.reassign_ui_v2_port(workspace, f"QEMU exited early with code {code}")
            if not remap.success:
                raise _StageAbort(Stage.QEMU, StartupReason.QEMU_EXITED, remap.message)
            reporter.log(remap.message)
            await self._save(workspace)
            self._reserve(attempt)
            reporter.log("Retrying QEMU start with updated UI-v2 host port.")
            process = await self._spawn(attempt)
            await attempt.token.sleep(self._config.qemu_grace_seconds)
            if process.returncode is not None:
                tail = " | ".join(self._controller.stderr_tail(workspace.id)[-3:])
                message = (
                    f"QEMU exited immediately after retry (exit {process.returncode}). "
                    "Check host port conflicts and VM logs."
                )
                raise _StageAbort(Stage.QEMU, StartupReason.QEMU_EXITED, f"{message} {tail}".strip())

        workspace.is_running = True
        workspace.last_run = datetime.now(UTC)
        await self._save(workspace)
        reporter.stage(Stage.QEMU, StageState.SUCCESS, f"QEMU started with PID {process.pid}")

    async def _running_conflict(self, workspace: Workspace) -> str | None:
        """Why `workspace` must not be launched now, or None.

        A tracked process that already exited is reaped here.
        """
        if workspace.id in self._controller.tracked_ids():
            if await self._controller.is_running(workspace.id):
                return "Workspace VM is already running."
            await self._controller.kill(workspace.id, force=True)

        disk = workspace.disk_path.resolve()
        for other_id in self._controller.tracked_ids():
            profile = self._controller.profile(other_id)
            if other_id == workspace.id or profile is None or profile.disk_path.resolve() != disk:
                continue
            if await self._controller.is_running(other_id):
                return f"Disk {workspace.disk_path} is attached to running workspace {other_id}."
        return None

    def _reserve(self, attempt: _StartAttempt) -> None:
        try:
            attempt.reservation = self._ports.reserve(attempt.workspace)
        except (PortConflictError, PortBusyError) as e:
            raise _StageAbort(Stage.QEMU, StartupReason.PORT_CONFLICT, e.message) from e

    async def _spawn(self, attempt: _StartAttempt) -> ProcessWrapper:
        profile = self._controller.profile_for(attempt.workspace)
        try:
            return await self._controller.start(profile)
        except ProcessLaunchError as e:
            raise _StageAbort(Stage.QEMU, StartupReason.QEMU_EXITED, e.message) from e

    # -- serial ---------------------------------------------------------

    def _attach_serial(self, attempt: _StartAttempt) -> None:
        """Start background serial capture; it never fails the start."""
        attempt.serial_token = attempt.token.child()
        attempt.serial_task = asyncio.create_task(
            self._capture_serial(attempt, attempt.serial_token),
            name=f"serial-{attempt.workspace.id}",
        )
        attempt.serial_task.add_done_callback(log_task_exception)

    async def _capture_serial(self, attempt: _StartAttempt, token: CancelToken) -> None:
        port = attempt.workspace.ports.serial
        try:
            await wait_tcp(
                constants.LOOPBACK_HOST,
                port,
                self._config.serial_wait_seconds,
                token,
                attempt_seconds=self._config.tcp_attempt_seconds,
                retry_delay=self._config.tcp_retry_delay_seconds,
            )
        except NetworkUnreachableError as e:
            attempt.reporter.log(f"{constants.SERIAL_LINE_PREFIX}console unavailable: {e.message}")
            return
        except StartCancelledError:
            return
        await self._serial.capture(port, attempt.reporter, token)

    async def _stop_serial(self, attempt: _StartAttempt) -> None:
        if attempt.serial_token is not None:
            attempt.serial_token.cancel()
        await cancel_task(attempt.serial_task, "serial capture", attempt.workspace.id)

    # -- ssh ------------------------------------------------------------

    async def _wait_ssh_port(self, attempt: _StartAttempt) -> None:
        port = attempt.workspace.ports.ssh
        attempt.reporter.stage(
            Stage.SSH, StageState.IN_PROGRESS, f"Waiting for SSH on {constants.LOOPBACK_HOST}:{port}..."
        )
        try:
            await wait_tcp(
                constants.LOOPBACK_HOST,
                port,
                self._config.ssh_port_wait_seconds,
                attempt.token,
                attempt_seconds=self._config.tcp_attempt_seconds,
                retry_delay=self._config.tcp_retry_delay_seconds,
            )
        except NetworkUnreachableError as e:
            raise _StageAbort(Stage.SSH, StartupReason.SSH_UNSTABLE, f"SSH port never opened: {e.message}") from e
        attempt.reporter.stage(Stage.SSH, StageState.SUCCESS, "SSH port is reachable.")

    async def _wait_ssh_stable(self, attempt: _StartAttempt) -> None:
        reporter = attempt.reporter
        reporter.stage(Stage.SSH_STABLE, StageState.IN_PROGRESS, "Waiting for SSH command channel...")
        ready = await self._probes.wait_ssh_ready(attempt.workspace, attempt.token)
        if ready.success:
            reporter.stage(Stage.SSH_STABLE, StageState.SUCCESS, ready.message)
            return
        if "hostkey_mismatch" in ready.message or not is_transient_connection_issue(ready.message):
            raise _StageAbort(Stage.SSH_STABLE, StartupReason.SSH_UNSTABLE, ready.message)
        attempt.degraded = True
        logger.warning(
            "SSH unstable, continuing in degraded mode",
            extra={"workspace_id": attempt.workspace.id, "error": ready.message},
        )
        reporter.stage(
            Stage.SSH_STABLE,
            StageState.IN_PROGRESS,
            f"SSH is still warming up; continuing startup and retrying in the background ({ready.message}).",
        )

    # -- guest ----------------------------------------------------------

    async def _wait_repository(self, attempt: _StartAttempt) -> None:
        workspace, reporter, token = attempt.workspace, attempt.reporter, attempt.token
        reporter.stage(Stage.UPDATES, StageState.IN_PROGRESS, f"Waiting for repository at {workspace.repo_dir}...")
        repo = await self._probes.wait_repository_ready(workspace, token, reporter)
        if repo.success:
            reporter.stage(Stage.UPDATES, StageState.SUCCESS, repo.message)
            return

        pending = (
            f"exit {REPO_MISSING_EXIT_CODE}" in repo.message
            or "Repository not ready after wait window" in repo.message
            or (attempt.degraded and is_transient_connection_issue(repo.message))
        )
        if not pending or "hostkey_mismatch" in repo.message:
            raise _StageAbort(Stage.UPDATES, StartupReason.ENV_MISSING, repo.message)

        attempt.repo_pending = True
        reporter.stage(Stage.UPDATES, StageState.SUCCESS, "Repository/update still in progress; continuing startup.")
        reporter.log(f"Repository wait: {repo.message}")
        if not attempt.degraded:
            tail = await self._probes.fetch_cloud_init_tail(workspace, token)
            for line in tail.splitlines()[-_CLOUD_INIT_TAIL_LINES:]:
                reporter.log(f"[cloud-init] {line}")

    async def _check_guest_storage(self, attempt: _StartAttempt) -> None:
        workspace, reporter, token = attempt.workspace, attempt.reporter, attempt.token
        cloud_init = await self._probes.check_cloud_init(workspace, token)
        reporter.log(f"cloud-init: {cloud_init.message}")

        storage = await self._probes.detect_guest_storage_issue(workspace, token)
        if storage.has_issue:
            reporter.stage(Stage.DOCKER, StageState.FAILED, "Skipped due to guest filesystem error.")
            raise _StageAbort(
                Stage.ENV,
                StartupReason.STORAGE_RO,
                f"Guest filesystem issue detected: {storage.message}",
            )

    async def _wait_runtime_env(self, attempt: _StartAttempt) -> None:
        reporter = attempt.reporter
        reporter.stage(Stage.ENV, StageState.IN_PROGRESS, "Checking runtime .env secrets...")
        env = await self._probes.wait_runtime_env_ready(attempt.workspace, attempt.token, reporter)
        if not env.success:
            if env.message.startswith("Guest filesystem issue detected"):
                reporter.stage(Stage.DOCKER, StageState.FAILED, "Skipped due to guest filesystem error.")
                raise _StageAbort(Stage.ENV, StartupReason.STORAGE_RO, env.message)
            raise _StageAbort(
                Stage.ENV,
                StartupReason.ENV_MISSING,
                f"Runtime .env is required before Docker startup: {env.message}",
            )
        reporter.stage(Stage.ENV, StageState.SUCCESS, env.message)

    async def _wait_container_stack(self, attempt: _StartAttempt) -> None:
        reporter = attempt.reporter
        reporter.stage(Stage.DOCKER, StageState.IN_PROGRESS, "Waiting for Docker containers...")
        docker = await self._probes.wait_container_stack_ready(attempt.workspace, attempt.token, reporter)
        if docker.success:
            reporter.stage(Stage.DOCKER, StageState.SUCCESS, docker.message)
            return
        attempt.warnings.append("Docker not fully ready")
        reporter.stage(Stage.DOCKER, StageState.FAILED, docker.message)

    # -- host endpoints -------------------------------------------------

    async def _wait_api(self, attempt: _StartAttempt) -> None:
        reporter = attempt.reporter
        reporter.stage(Stage.API, StageState.IN_PROGRESS, "Waiting for API port...")
        api = await self._probes.wait_api(attempt.workspace, attempt.token)
        if api.success:
            reporter.stage(Stage.API, StageState.SUCCESS, api.message)
            return
        attempt.warnings.append("API not reachable")
        reporter.stage(Stage.API, StageState.FAILED, api.message)

    async def _wait_web_ui(self, attempt: _StartAttempt) -> None:
        reporter = attempt.reporter
        reporter.stage(Stage.WEBUI, StageState.IN_PROGRESS, "Waiting for WebUI...")
        web = await self._probes.wait_web_ui(attempt.workspace, attempt.token)
        if not web.success:
            raise _StageAbort(Stage.WEBUI, StartupReason.WEBUI_UNREACHABLE, web.message)
        reporter.stage(Stage.WEBUI, StageState.SUCCESS, web.message)
        await self._run_ready_hooks(attempt.workspace)

    async def _connection_test(self, attempt: _StartAttempt) -> None:
        reporter = attempt.reporter
        if attempt.degraded:
            reporter.stage(Stage.CONNECTION, StageState.SUCCESS, _SKIPPED_WARMING_UP)
            return
        reporter.stage(Stage.CONNECTION, StageState.IN_PROGRESS, "Running SSH connection test...")
        result = await self._runner.run(attempt.workspace, CONNECTION_TEST_COMMAND, attempt.token)
        if not result.success or "connection-ok" not in result.message:
            raise _StageAbort(
                Stage.CONNECTION,
                StartupReason.CONNECTION_FAILED,
                f"Connection test failed: {result.message}",
            )
        reporter.stage(Stage.CONNECTION, StageState.SUCCESS, "SSH connection test passed.")

    # -- finish ---------------------------------------------------------

    async def _finish(self, attempt: _StartAttempt) -> StartOutcome:
        workspace, reporter = attempt.workspace, attempt.reporter
        if attempt.degraded:
            workspace.status = VmStatus.WARMING_UP
            await self._save(workspace)
            message = "Workspace is running. SSH is still warming up; try SSH/Docker tabs again in a moment."
            reporter.stage(Stage.DONE, StageState.SUCCESS, message)
            self._start_warmup(workspace, reporter)
            return StartOutcome.ok(message)

        workspace.status = VmStatus.RUNNING
        await self._save(workspace)
        if attempt.warnings:
            message = f"Workspace started with warnings: {'; '.join(attempt.warnings)}. See stages and VM logs."
        elif attempt.repo_pending:
            message = "Workspace started, but repository setup is still pending. See VM logs / serial console."
        else:
            message = "Workspace is ready."
        reporter.stage(Stage.DONE, StageState.SUCCESS, message)
        logger.info("Workspace started", extra={"workspace_id": workspace.id, "warnings": attempt.warnings})
        return StartOutcome.ok(message)

    def _start_warmup(self, workspace: Workspace, reporter: StartupProgressReporter) -> None:
        async def probe(ws: Workspace, token: CancelToken) -> StartOutcome:
            result = await self._runner.run(ws, WARMUP_PROBE_COMMAND, token)
            if result.success and "warmup-ready" not in result.message:
                return StartOutcome.fail(f"unexpected warmup output: {result.message}")
            return result

        async def on_ready(ws: Workspace) -> None:
            ws.status = VmStatus.RUNNING
            await self._save(ws)
            reporter.log(f"'{ws.name}' SSH is stable; workspace is running.")
            await self._run_ready_hooks(ws)

        async def on_failed(ws: Workspace, last: str) -> None:
            ws.status = VmStatus.WARMING_UP_TIMEOUT
            await self._save(ws)
            reporter.log(f"'{ws.name}' SSH did not stabilize: {last}")

        self._warmup.start(workspace, probe, on_ready, on_failed, reporter)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, workspace: Workspace) -> StartOutcome:
        """Stop the workspace VM: QMP quit first, process kill as fallback."""
        self._warmup.cancel(workspace.id)
        workspace.status = VmStatus.STOPPING
        await self._save(workspace)

        result = await self._controller.stop(workspace)
        self._ports.release_workspace(workspace.id)
        if result.success:
            workspace.status = VmStatus.STOPPED
            workspace.is_running = False
        else:
            workspace.status = VmStatus.ERROR
            result = StartOutcome.fail(f"ERROR: {result.message}")
        await self._save(workspace)
        logger.info(
            "Workspace stop finished",
            extra={"workspace_id": workspace.id, "success": result.success, "detail": result.message},
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _abort_vm(self, workspace: Workspace, status: VmStatus) -> None:
        await self._controller.kill(workspace.id, force=True)
        workspace.status = status
        workspace.is_running = False
        await self._save(workspace)

    async def _save(self, workspace: Workspace) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(workspace)
        except OSError as e:
            logger.error(
                "Failed to persist workspace",
                extra={"workspace_id": workspace.id, "error": str(e), "error_type": type(e).__name__},
            )

    async def _run_ready_hooks(self, workspace: Workspace) -> None:
        for hook in self._ready_hooks:
            try:
                await hook(workspace)
            except Exception:
                logger.exception("Ready hook failed", extra={"workspace_id": workspace.id})
