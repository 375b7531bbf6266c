"""Resource cleanup utilities for VM lifecycle management.

Cleanup operations log errors but never raise. Used by the VM process
controller and the orchestrator's guaranteed-cleanup path.
"""

import asyncio
import contextlib

from vm_workspaces._logging import get_logger
from vm_workspaces.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def terminate_vm_process(
    proc: ProcessWrapper | None,
    context_id: str,
    *,
    force: bool,
    grace_timeout: float,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a QEMU process: optional grace wait, then SIGKILL of the whole tree.

    A non-forced call waits `grace_timeout` for the process to exit on its
    own (after a QMP quit) before killing. Always awaits the exit so no
    zombie is left behind.

    Args:
        proc: Process to stop (None safe - returns immediately)
        context_id: Workspace id for logging
        force: Skip the grace wait
        grace_timeout: Seconds to wait for a voluntary exit
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if it survived the kill
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug("QEMU already exited", extra={"context_id": context_id, "returncode": proc.returncode})
            return True

        if not force:
            try:
                await proc.wait_with_timeout(timeout=grace_timeout)
                logger.debug(
                    "QEMU exited within grace period",
                    extra={"context_id": context_id, "returncode": proc.returncode},
                )
                return True
            except TimeoutError:
                logger.warning(
                    "QEMU still running after grace period, killing process tree",
                    extra={"context_id": context_id, "grace_timeout": grace_timeout},
                )

        await proc.kill_tree()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
        except TimeoutError:
            logger.error(
                "QEMU didn't exit after SIGKILL",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False
        logger.info("QEMU process tree killed", extra={"context_id": context_id, "returncode": proc.returncode})
        return True

    except ProcessLookupError:
        logger.debug("QEMU already dead (ProcessLookupError)", extra={"context_id": context_id})
        return True

    except Exception as e:
        logger.error(
            "QEMU cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cancel_task(task: asyncio.Task[None] | None, name: str, context_id: str) -> None:
    """Cancel a background task and wait for it to finish unwinding."""
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        try:
            await task
        except Exception as e:
            logger.warning(
                f"{name} task failed during cancellation",
                extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            )
