"""Background SSH warmup after a degraded start.

A degraded start returns while SSH is still flaky. The scheduler keeps one
retry loop per workspace id that probes on a fixed interval until the probe
succeeds (on_ready) or attempts run out (on_failed). Starting a new loop
for an id cancels the previous one; cancel() and cancel_all() never leave
a task behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from vm_workspaces._logging import get_logger
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.exceptions import StartCancelledError
from vm_workspaces.models import StartOutcome, Workspace
from vm_workspaces.progress import StartupProgressReporter
from vm_workspaces.resource_cleanup import cancel_task
from vm_workspaces.subprocess_utils import log_task_exception

logger = get_logger(__name__)

WarmupProbe = Callable[[Workspace, CancelToken], Awaitable[StartOutcome]]
ReadyCallback = Callable[[Workspace], Awaitable[None]]
FailedCallback = Callable[[Workspace, str], Awaitable[None]]


class WarmupRetryScheduler:
    """Registry of per-workspace warmup loops."""

    def __init__(self, *, max_attempts: int = 18, interval_seconds: float = 12.0) -> None:
        self._max_attempts = max_attempts
        self._interval_seconds = interval_seconds
        self._entries: dict[str, tuple[asyncio.Task[None], CancelToken]] = {}

    def is_active(self, workspace_id: str) -> bool:
        entry = self._entries.get(workspace_id)
        return entry is not None and not entry[0].done()

    def start(
        self,
        workspace: Workspace,
        probe: WarmupProbe,
        on_ready: ReadyCallback,
        on_failed: FailedCallback,
        reporter: StartupProgressReporter | None = None,
    ) -> None:
        """Start (or restart) the warmup loop for `workspace`."""
        self.cancel(workspace.id)
        token = CancelToken()
        task = asyncio.create_task(
            self._run(workspace, probe, on_ready, on_failed, reporter, token),
            name=f"warmup-{workspace.id}",
        )
        task.add_done_callback(log_task_exception)
        task.add_done_callback(lambda t, workspace_id=workspace.id: self._forget(workspace_id, t))
        self._entries[workspace.id] = (task, token)
        logger.info(
            "Warmup scheduled",
            extra={"workspace_id": workspace.id, "attempts": self._max_attempts, "interval": self._interval_seconds},
        )

    def cancel(self, workspace_id: str) -> bool:
        """Stop the loop for `workspace_id`.

        Returns:
            True if a loop was running.
        """
        entry = self._entries.pop(workspace_id, None)
        if entry is None:
            return False
        task, token = entry
        token.cancel()
        task.cancel()
        logger.debug("Warmup cancelled", extra={"workspace_id": workspace_id})
        return True

    async def cancel_all(self) -> None:
        """Cancel every loop and wait for them to unwind (app shutdown)."""
        entries = list(self._entries.items())
        self._entries.clear()
        for workspace_id, (task, token) in entries:
            token.cancel()
            await cancel_task(task, "warmup", workspace_id)

    def _forget(self, workspace_id: str, task: asyncio.Task[None]) -> None:
        entry = self._entries.get(workspace_id)
        if entry is not None and entry[0] is task:
            del self._entries[workspace_id]

    async def _run(
        self,
        workspace: Workspace,
        probe: WarmupProbe,
        on_ready: ReadyCallback,
        on_failed: FailedCallback,
        reporter: StartupProgressReporter | None,
        token: CancelToken,
    ) -> None:
        last = "no attempt completed"
        try:
            for attempt in range(1, self._max_attempts + 1):
                await token.sleep(self._interval_seconds)
                result = await probe(workspace, token)
                if result.success:
                    logger.info("Warmup succeeded", extra={"workspace_id": workspace.id, "attempt": attempt})
                    await on_ready(workspace)
                    return
                last = result.message
                logger.info(
                    f"Warmup attempt {attempt}/{self._max_attempts} for '{workspace.name}' failed: {last}",
                    extra={"workspace_id": workspace.id, "attempt": attempt},
                )
                if reporter is not None:
                    reporter.log(f"'{workspace.name}' warming up ({attempt}/{self._max_attempts})...")
        except StartCancelledError:
            return
        logger.warning("Warmup attempts exhausted", extra={"workspace_id": workspace.id, "error": last})
        await on_failed(workspace, last)
