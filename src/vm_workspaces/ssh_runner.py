"""One-shot SSH commands against a workspace guest.

Transport is paramiko, run in a worker thread per command (paramiko is
blocking). Failures are classified:

- Non-zero exit: guest-side failure, returned at once, never retried
- Host-key mismatch: fatal, returned at once, never retried
- Socket / handshake / timeout errors: transient, retried by tenacity with
  linear backoff (0.4s * attempt); cancellation is checked before every
  attempt and interrupts the backoff wait

Guest host keys are pinned on first use per forwarded port in an OpenSSH
known_hosts file (KnownHostStore).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Protocol

import paramiko
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_incrementing

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.config import StartupConfig
from vm_workspaces.exceptions import HostKeyMismatchError, SshTransientError
from vm_workspaces.models import StartOutcome, Workspace

logger = get_logger(__name__)

_TRANSIENT_MARKERS: Final[tuple[str, ...]] = (
    "ssh transient error",
    "socket",
    "connection",
    "timed out",
    "aborted by",
    "forcibly closed",
    "not allowed at this time",
    "does not contain an ssh identification",
)


def is_transient_connection_issue(message: str) -> bool:
    """True if `message` looks like a transport hiccup rather than a guest-side failure."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


def escape_single_quotes(value: str) -> str:
    """Escape `value` for embedding inside a single-quoted POSIX shell string."""
    return value.replace("'", "'\\''")


@dataclass(frozen=True, slots=True)
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str


class SshConnector(Protocol):
    """Blocking transport that runs one command and returns its result.

    Implementations raise paramiko/OS exceptions on transport failure.
    """

    def execute(self, *, host: str, port: int, username: str, key_path: Path, command: str) -> CommandResult: ...


# ============================================================================
# Host key pinning
# ============================================================================


class KnownHostStore:
    """Guest host keys pinned per loopback port, stored as OpenSSH known_hosts."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    @staticmethod
    def host_key_name(port: int, host: str = constants.LOOPBACK_HOST) -> str:
        return host if port == constants.GUEST_SSH_PORT else f"[{host}]:{port}"

    def load(self) -> paramiko.HostKeys:
        keys = paramiko.HostKeys()
        if self.path.exists():
            keys.load(str(self.path))
        return keys

    def pin(self, hostname: str, key: paramiko.PKey) -> None:
        with self._lock:
            keys = self.load()
            keys.add(hostname, key.get_name(), key)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            keys.save(str(self.path))
        logger.info("Pinned guest host key", extra={"host": hostname, "key_type": key.get_name()})

    def forget(self, port: int) -> bool:
        """Drop the pinned key for `port` (e.g. after the workspace disk was recreated).

        Returns:
            True if a key was removed.
        """
        name = self.host_key_name(port)
        with self._lock:
            keys = self.load()
            if name not in keys:
                return False
            del keys[name]
            keys.save(str(self.path))
        logger.info("Forgot guest host key", extra={"host": name})
        return True


class _PinOnFirstUsePolicy(paramiko.MissingHostKeyPolicy):
    def __init__(self, store: KnownHostStore) -> None:
        self._store = store

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        client.get_host_keys().add(hostname, key.get_name(), key)
        self._store.pin(hostname, key)


class ParamikoConnector:
    """SshConnector backed by paramiko.SSHClient, one connection per command."""

    def __init__(
        self,
        known_hosts: KnownHostStore | None = None,
        *,
        connect_timeout: float = constants.SSH_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = constants.SSH_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._known_hosts = known_hosts
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout

    def execute(self, *, host: str, port: int, username: str, key_path: Path, command: str) -> CommandResult:
        client = paramiko.SSHClient()
        try:
            if self._known_hosts is not None:
                if self._known_hosts.path.exists():
                    client.load_host_keys(str(self._known_hosts.path))
                client.set_missing_host_key_policy(_PinOnFirstUsePolicy(self._known_hosts))
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            client.connect(
                hostname=host,
                port=port,
                username=username,
                key_filename=str(key_path),
                timeout=self._connect_timeout,
                banner_timeout=self._connect_timeout,
                auth_timeout=self._connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            _, stdout, stderr = client.exec_command(command, timeout=self._command_timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
            return CommandResult(status, out, err)
        finally:
            client.close()


# ============================================================================
# Runner
# ============================================================================


class SshCommandRunner:
    """Runs one command in a workspace guest with typed retry."""

    def __init__(
        self,
        connector: SshConnector | None = None,
        *,
        config: StartupConfig | None = None,
        host: str = constants.LOOPBACK_HOST,
    ) -> None:
        self._config = config or StartupConfig()
        self._connector = connector or ParamikoConnector(
            connect_timeout=self._config.ssh_connect_timeout_seconds,
            command_timeout=self._config.ssh_command_timeout_seconds,
        )
        self._host = host

    async def run(self, workspace: Workspace, command: str, token: CancelToken) -> StartOutcome:
        """Run `command` as the workspace user on 127.0.0.1:<ssh port>.

        Returns:
            (True, trimmed stdout) on exit 0; (False, reason) otherwise.

        Raises:
            StartCancelledError: Cancelled before an attempt or during backoff.
        """
        key_path = workspace.ssh_private_key_path
        if not key_path.is_file():
            return StartOutcome.fail(f"SSH key file not found: {key_path}")

        backoff = self._config.ssh_backoff_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.ssh_max_attempts),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_exception_type(SshTransientError),
            sleep=token.sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    token.raise_if_cancelled()
                    result = await self._execute_once(workspace, command, token)
        except HostKeyMismatchError as e:
            return StartOutcome.fail(e.message)
        except SshTransientError as e:
            return StartOutcome.fail(f"SSH transient error: {e.message}")

        if result.exit_status == 0:
            return StartOutcome.ok(result.stdout.strip())
        detail = result.stderr.strip() or result.stdout.strip()
        return StartOutcome.fail(detail or f"SSH command failed with exit {result.exit_status}")

    async def _execute_once(self, workspace: Workspace, command: str, token: CancelToken) -> CommandResult:
        port = workspace.ports.ssh
        try:
            return await token.run(
                asyncio.to_thread(
                    self._connector.execute,
                    host=self._host,
                    port=port,
                    username=workspace.username,
                    key_path=workspace.ssh_private_key_path,
                    command=command,
                )
            )
        except paramiko.BadHostKeyException as e:
            raise HostKeyMismatchError(
                f"reason=hostkey_mismatch; SSH host key mismatch for {self._host}:{port} "
                f"(expected {e.expected_key.get_name()}, got {e.key.get_name()}).",
                {"workspace_id": workspace.id, "port": port},
            ) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            message = str(e) or type(e).__name__
            logger.debug(
                "SSH transport error",
                extra={"workspace_id": workspace.id, "port": port, "error": message, "error_type": type(e).__name__},
            )
            raise SshTransientError(message, {"workspace_id": workspace.id, "port": port}) from e
