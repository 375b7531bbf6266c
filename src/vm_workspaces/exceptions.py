"""Exception hierarchy for vm-workspaces.

All exceptions inherit from WorkspaceError.

Hierarchy:
    WorkspaceError (base)
    ├── TransientError (retryable marker base)
    │   ├── PortBusyError                ← port held by a third-party process
    │   ├── SshTransientError            ← socket/timeout/handshake failures
    │   └── NetworkUnreachableError      ← TCP probe deadline elapsed
    ├── PermanentError (non-retryable marker base)
    │   ├── PortConflictError            ← port reserved by another active start
    │   ├── ProcessLaunchError           ← QEMU missing / exited immediately
    │   └── HostKeyMismatchError         ← pinned guest host key changed
    ├── QmpError                         ← management protocol failure
    └── StartCancelledError              ← cooperative cancellation

Probes and the orchestrator report expected failures as StartOutcome values.
These classes are raised at component seams (port reservation, TCP waits,
cancellation, QMP) and carry the message that ends up in the outcome.
"""

from __future__ import annotations

from typing import Any


class WorkspaceError(Exception):
    """Base exception for all workspace errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(WorkspaceError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(WorkspaceError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Host ports
# =============================================================================


class PortConflictError(PermanentError):
    """Host port already reserved by another in-flight workspace start.

    Attributes:
        port: The conflicting host port.
    """

    def __init__(self, port: int, context: dict[str, Any] | None = None):
        super().__init__(f"Host port reservation conflict: 127.0.0.1:{port}.", context)
        self.port = port


class PortBusyError(TransientError):
    """Host port(s) occupied at the OS level by a process outside this manager.

    Attributes:
        ports: The busy host ports.
    """

    def __init__(self, message: str, ports: list[int] | None = None, context: dict[str, Any] | None = None):
        super().__init__(message, context)
        self.ports = ports or []


# =============================================================================
# VM process
# =============================================================================


class ProcessLaunchError(PermanentError):
    """Hypervisor process could not be started or exited right after launch."""


class QmpError(WorkspaceError):
    """Management protocol (QMP) connection or command failed."""


# =============================================================================
# SSH / guest
# =============================================================================


class HostKeyMismatchError(PermanentError):
    """Guest presented a host key different from the pinned one.

    Never retried: the VM disk was replaced or something is intercepting
    the forwarded port.
    """


class SshTransientError(TransientError):
    """SSH transport failure that may clear once the guest settles."""


class NetworkUnreachableError(TransientError):
    """TCP endpoint did not accept a connection before the deadline.

    Attributes:
        host: Probed host.
        port: Probed port.
    """

    def __init__(self, host: str, port: int, timeout: float):
        super().__init__(
            f"TCP {host}:{port} not reachable within {timeout:g}s",
            {"host": host, "port": port, "timeout": timeout},
        )
        self.host = host
        self.port = port


# =============================================================================
# Cancellation
# =============================================================================


class StartCancelledError(WorkspaceError):
    """Cooperative cancellation of a start attempt or background task.

    Raised by CancelToken at loop heads and during waits. Never retried.
    """

    def __init__(self, message: str = "Start cancelled.", context: dict[str, Any] | None = None):
        super().__init__(message, context)
