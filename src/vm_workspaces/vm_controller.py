"""VM process controller: launch, QMP stop and kill of workspace QEMU processes.

Tracks one process per workspace id. start() only launches; detecting an
immediate exit and deciding what to do about it is the caller's job.
"""

from __future__ import annotations

import asyncio
import shutil
from collections import deque
from dataclasses import dataclass, field
from typing import Final

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.exceptions import ProcessLaunchError, QmpError
from vm_workspaces.models import StartOutcome, VmProfile, Workspace
from vm_workspaces.platform_utils import ProcessWrapper
from vm_workspaces.process_registry import ProcessRecord, ProcessRegistry
from vm_workspaces.qemu_cmd import build_qemu_cmd
from vm_workspaces.qmp_client import QmpControl
from vm_workspaces.resource_cleanup import cancel_task, terminate_vm_process
from vm_workspaces.settings import Settings
from vm_workspaces.subprocess_utils import drain_subprocess_output, log_task_exception

logger = get_logger(__name__)

_STDERR_TAIL_LINES: Final[int] = 20


@dataclass
class _TrackedVm:
    process: ProcessWrapper
    profile: VmProfile
    drain_task: asyncio.Task[None] | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES))


class VmProcessController:
    """Owns the workspace id -> QEMU process map."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: ProcessRegistry | None = None,
        stop_grace_seconds: float = constants.STOP_GRACE_SECONDS,
    ) -> None:
        self._settings = settings or Settings()
        self._registry = registry
        self._stop_grace_seconds = stop_grace_seconds
        self._tracked: dict[str, _TrackedVm] = {}

    def profile_for(self, workspace: Workspace) -> VmProfile:
        return VmProfile.from_workspace(workspace, self._settings.qemu_binary, self._settings.accelerator)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def start(self, profile: VmProfile) -> ProcessWrapper:
        """Launch QEMU for `profile` and start tracking it.

        Raises:
            ProcessLaunchError: Binary missing, already tracked, or exec failed.
        """
        if profile.workspace_id in self._tracked:
            msg = f"Workspace {profile.workspace_id} already has a tracked QEMU process"
            raise ProcessLaunchError(msg, {"workspace_id": profile.workspace_id})
        if shutil.which(str(profile.qemu_binary)) is None:
            msg = f"QEMU binary not found: {profile.qemu_binary}"
            raise ProcessLaunchError(msg, {"workspace_id": profile.workspace_id})

        cmd = build_qemu_cmd(profile)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            msg = f"Failed to launch QEMU: {e}"
            raise ProcessLaunchError(msg, {"workspace_id": profile.workspace_id}) from e

        process = ProcessWrapper(proc)
        tracked = _TrackedVm(process=process, profile=profile)

        def on_stderr(line: str) -> None:
            tracked.stderr_tail.append(line)
            logger.warning(f"[QEMU stderr] {line}", extra={"context_id": profile.workspace_id, "output": line})

        tracked.drain_task = asyncio.create_task(
            drain_subprocess_output(
                process,
                process_name="QEMU",
                context_id=profile.workspace_id,
                stderr_handler=on_stderr,
            ),
            name=f"qemu-drain-{profile.workspace_id}",
        )
        tracked.drain_task.add_done_callback(log_task_exception)
        self._tracked[profile.workspace_id] = tracked

        if self._registry is not None:
            await self._registry.register(
                ProcessRecord(
                    workspace_id=profile.workspace_id,
                    pid=process.pid or 0,
                    create_time=process.create_time,
                    disk_path=str(profile.disk_path),
                )
            )
        logger.info("QEMU launched", extra={"workspace_id": profile.workspace_id, "pid": process.pid})
        return process

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def tracked_ids(self) -> frozenset[str]:
        return frozenset(self._tracked)

    def process(self, workspace_id: str) -> ProcessWrapper | None:
        tracked = self._tracked.get(workspace_id)
        return tracked.process if tracked else None

    def profile(self, workspace_id: str) -> VmProfile | None:
        tracked = self._tracked.get(workspace_id)
        return tracked.profile if tracked else None

    def stderr_tail(self, workspace_id: str) -> list[str]:
        tracked = self._tracked.get(workspace_id)
        return list(tracked.stderr_tail) if tracked else []

    async def is_running(self, workspace_id: str) -> bool:
        tracked = self._tracked.get(workspace_id)
        return tracked is not None and await tracked.process.is_running()

    # ------------------------------------------------------------------
    # Stop / kill
    # ------------------------------------------------------------------

    async def kill(self, workspace_id: str, *, force: bool) -> bool:
        """Kill the tracked process (tree) and stop tracking it. Idempotent.

        Args:
            force: Kill at once; otherwise wait the stop grace period first.

        Returns:
            True if no tracked process remains alive.
        """
        tracked = self._tracked.pop(workspace_id, None)
        if tracked is None:
            return True
        try:
            return await terminate_vm_process(
                tracked.process,
                workspace_id,
                force=force,
                grace_timeout=self._stop_grace_seconds,
            )
        finally:
            await cancel_task(tracked.drain_task, "QEMU drain", workspace_id)
            if self._registry is not None:
                await self._registry.unregister(workspace_id)

    async def stop(self, workspace: Workspace) -> StartOutcome:
        """QMP quit, then wait and reap; force-kill when QMP is unavailable."""
        try:
            async with QmpControl(workspace.ports.qmp) as qmp:
                await qmp.quit()
        except QmpError as e:
            logger.warning(
                "QMP stop failed, falling back to kill",
                extra={"workspace_id": workspace.id, "error": e.message},
            )
            if await self.kill(workspace.id, force=True):
                return StartOutcome.ok(f"VM stopped by process kill ({e.message}).")
            return StartOutcome.fail("VM stop failed (QMP + fallback kill).")

        if await self.kill(workspace.id, force=False):
            return StartOutcome.ok("VM stopped.")
        return StartOutcome.fail("VM stop failed (QMP + fallback kill).")

    async def shutdown(self) -> None:
        """Force-kill every tracked process."""
        for workspace_id in list(self._tracked):
            await self.kill(workspace_id, force=True)

    # ------------------------------------------------------------------
    # QMP controls
    # ------------------------------------------------------------------

    async def pause(self, workspace: Workspace) -> None:
        async with QmpControl(workspace.ports.qmp) as qmp:
            await qmp.stop()

    async def resume(self, workspace: Workspace) -> None:
        async with QmpControl(workspace.ports.qmp) as qmp:
            await qmp.cont()

    async def reset(self, workspace: Workspace) -> None:
        async with QmpControl(workspace.ports.qmp) as qmp:
            await qmp.system_reset()

    async def query_status(self, workspace: Workspace) -> str:
        async with QmpControl(workspace.ports.qmp) as qmp:
            return await qmp.query_status()
