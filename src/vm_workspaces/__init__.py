"""vm-workspaces: Startup and shutdown orchestration for local QEMU workspace VMs.

Launches a workspace VM, then waits stage by stage for SSH, the guest
repository, the runtime .env, the container stack and the web endpoints,
streaming progress and serial boot output to the caller.

Quick Start:
    ```python
    from vm_workspaces import JsonWorkspaceStore, WorkspaceStartupOrchestrator

    store = JsonWorkspaceStore(Path("~/.local/share/vm-workspaces/workspaces.json").expanduser())
    workspace = await store.get("dev")

    async with WorkspaceStartupOrchestrator.create(store=store) as orchestrator:
        outcome = await orchestrator.start(workspace, sink=print)
        print(outcome.message)  # "Workspace is ready."
        ...
        await orchestrator.stop(workspace)
    ```

Cancellation:
    ```python
    from vm_workspaces import CancelToken

    token = CancelToken()
    task = asyncio.create_task(orchestrator.start(workspace, token=token))
    token.cancel()
    outcome = await task  # StartOutcome(success=False, message="Start cancelled.")
    ```

Failure messages carry a machine-readable tag: ``reason=port_conflict; ...``.
Tags: hostkey_mismatch, port_conflict, env_missing, storage_ro, ssh_unstable,
qemu_exited, webui_unreachable, connection_failed, startup_failed.

Requirements:
    - QEMU with KVM (Linux) or HVF (macOS) acceleration
    - A guest image with cloud-init, sshd and docker
    - Python 3.12+
"""

from vm_workspaces.cancellation import CancelToken
from vm_workspaces.config import StartupConfig
from vm_workspaces.exceptions import (
    HostKeyMismatchError,
    NetworkUnreachableError,
    PermanentError,
    PortBusyError,
    PortConflictError,
    ProcessLaunchError,
    QmpError,
    SshTransientError,
    StartCancelledError,
    TransientError,
    WorkspaceError,
)
from vm_workspaces.models import (
    LogLine,
    PortSet,
    ProgressMessage,
    Stage,
    StageState,
    StageUpdate,
    StartOutcome,
    VmStatus,
    Workspace,
)
from vm_workspaces.orchestrator import WorkspaceStartupOrchestrator
from vm_workspaces.port_reservation import PortReservationManager
from vm_workspaces.progress import StartupReason
from vm_workspaces.settings import Settings
from vm_workspaces.store import JsonWorkspaceStore, WorkspaceStore
from vm_workspaces.warmup import WarmupRetryScheduler

__all__ = [
    "CancelToken",
    "HostKeyMismatchError",
    "JsonWorkspaceStore",
    "LogLine",
    "NetworkUnreachableError",
    "PermanentError",
    "PortBusyError",
    "PortConflictError",
    "PortReservationManager",
    "PortSet",
    "ProcessLaunchError",
    "ProgressMessage",
    "QmpError",
    "Settings",
    "SshTransientError",
    "Stage",
    "StageState",
    "StageUpdate",
    "StartCancelledError",
    "StartOutcome",
    "StartupConfig",
    "StartupReason",
    "TransientError",
    "VmStatus",
    "WarmupRetryScheduler",
    "Workspace",
    "WorkspaceError",
    "WorkspaceStartupOrchestrator",
    "WorkspaceStore",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vm-workspaces")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
