"""QMP (QEMU Monitor Protocol) control over the workspace's loopback TCP port.

Async wrapper around qemu.qmp used by the stop flow (quit) and the
pause / resume / reset / status controls.
"""

import asyncio
import types
from typing import Any

from qemu.qmp import ExecInterruptedError, QMPClient, QMPError  # type: ignore[import-untyped]

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.exceptions import QmpError

_logger = get_logger(__name__)


class QmpControl:
    """Async QMP client for one QEMU instance.

    Usage:
        async with QmpControl(workspace.ports.qmp) as qmp:
            await qmp.quit()
    """

    def __init__(
        self,
        port: int,
        host: str = constants.LOOPBACK_HOST,
        *,
        command_timeout: float = constants.QMP_COMMAND_TIMEOUT_SECONDS,
    ):
        self._address = (host, port)
        self._command_timeout = command_timeout
        self._client: QMPClient | None = None

    async def __aenter__(self) -> "QmpControl":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()

    async def connect(self, timeout: float = constants.QMP_CONNECT_TIMEOUT_SECONDS) -> None:
        """Connect and negotiate capabilities.

        Raises:
            QmpError: If connection fails or times out.
        """
        self._client = QMPClient("vm-workspaces")
        try:
            await asyncio.wait_for(self._client.connect(self._address), timeout=timeout)
            _logger.debug("Connected to QMP: %s:%s", *self._address)
        except TimeoutError as e:
            await self._cleanup_client()
            msg = f"QMP connection timed out after {timeout}s"
            raise QmpError(msg, {"address": self._address}) from e
        except (QMPError, OSError) as e:
            await self._cleanup_client()
            msg = f"QMP connection failed: {e}"
            raise QmpError(msg, {"address": self._address}) from e

    async def disconnect(self) -> None:
        """Disconnect. Safe to call multiple times or if never connected."""
        await self._cleanup_client()

    async def _cleanup_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.disconnect()
            except Exception:  # noqa: BLE001 - Best effort cleanup
                _logger.debug("QMP disconnect error (ignored)", exc_info=True)
            finally:
                self._client = None

    async def execute(self, command: str, arguments: dict[str, Any] | None = None) -> Any:
        """Run one QMP command.

        Raises:
            QmpError: Not connected, command failed or timed out.
        """
        if self._client is None:
            msg = "QMP client not connected"
            raise QmpError(msg)
        try:
            return await asyncio.wait_for(self._client.execute(command, arguments), timeout=self._command_timeout)
        except TimeoutError as e:
            msg = f"QMP {command} timed out after {self._command_timeout}s"
            raise QmpError(msg, {"command": command}) from e
        except (QMPError, OSError) as e:
            msg = f"QMP {command} failed: {e}"
            raise QmpError(msg, {"command": command}) from e

    async def quit(self) -> None:
        """Ask QEMU to exit. A connection dropped mid-reply counts as success."""
        if self._client is None:
            msg = "QMP client not connected"
            raise QmpError(msg)
        try:
            await asyncio.wait_for(self._client.execute("quit"), timeout=self._command_timeout)
        except ExecInterruptedError:
            _logger.debug("QMP connection closed during quit (expected)")
        except TimeoutError as e:
            msg = f"QMP quit timed out after {self._command_timeout}s"
            raise QmpError(msg) from e
        except (QMPError, OSError) as e:
            raise QmpError(f"QMP quit failed: {e}") from e

    async def system_powerdown(self) -> None:
        await self.execute("system_powerdown")

    async def stop(self) -> None:
        """Pause guest vCPUs."""
        await self.execute("stop")

    async def cont(self) -> None:
        """Resume guest vCPUs."""
        await self.execute("cont")

    async def system_reset(self) -> None:
        await self.execute("system_reset")

    async def query_status(self) -> str:
        """Return the QEMU run state (e.g. "running", "paused")."""
        result = await self.execute("query-status")
        return str(result.get("status", "unknown")) if isinstance(result, dict) else "unknown"
