"""Cross-platform OS detection and process utilities.

Uses psutil's built-in OS detection constants for platform identification.
Provides a PID-reuse safe wrapper around the hypervisor child process.
"""

import asyncio
import contextlib
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    MACOS = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


def get_data_dir() -> Path:
    """Per-user state directory (known hosts, process registry, workspace list).

    Returns:
        - Linux: ~/.local/share/vm-workspaces
        - macOS: ~/Library/Application Support/vm-workspaces
    """
    if detect_host_os() == HostOS.MACOS:
        return Path.home() / "Library" / "Application Support" / "vm-workspaces"
    return Path.home() / ".local" / "share" / "vm-workspaces"


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so liveness checks
    and tree kills never hit a recycled PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True
        try:
            running = await asyncio.to_thread(self.psutil_proc.is_running)
            status = await asyncio.to_thread(self.psutil_proc.status)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False
        return running and status != psutil.STATUS_ZOMBIE

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def create_time(self) -> float | None:
        """psutil create time, used to recognize the same process after a restart."""
        if not self.psutil_proc:
            return None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            return self.psutil_proc.create_time()
        return None

    async def wait(self) -> int:
        return await self.async_proc.wait()

    @property
    def stdout(self):
        return self.async_proc.stdout

    @property
    def stderr(self):
        return self.async_proc.stderr

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]

    async def kill_tree(self) -> None:
        """SIGKILL the process and every descendant.

        Children are collected first so they can't be reparented out of reach.
        """
        if self.psutil_proc is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()
            return
        await asyncio.to_thread(kill_psutil_tree, self.psutil_proc)


def kill_psutil_tree(proc: psutil.Process) -> None:
    """Kill a psutil process and its descendants; already-dead members are skipped."""
    try:
        children = proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    for member in [*children, proc]:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            member.kill()
