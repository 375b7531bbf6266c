"""Plain TCP reachability probes for forwarded guest ports."""

from __future__ import annotations

import asyncio
import time

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.exceptions import NetworkUnreachableError

logger = get_logger(__name__)


async def try_connect(host: str, port: int, timeout: float) -> bool:
    """Single connect attempt; the connection is closed right away."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass  # Peer reset during close still proves the port accepted
    return True


async def wait_tcp(
    host: str,
    port: int,
    timeout: float,
    token: CancelToken,
    *,
    attempt_seconds: float = constants.TCP_CONNECT_ATTEMPT_SECONDS,
    retry_delay: float = constants.TCP_RETRY_DELAY_SECONDS,
) -> None:
    """Poll until `host:port` accepts a TCP connection.

    The deadline is computed once; cancellation is checked before every
    attempt and interrupts the retry delay.

    Raises:
        NetworkUnreachableError: Deadline elapsed without a successful connect.
        StartCancelledError: Cancellation was signalled.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        token.raise_if_cancelled()
        attempts += 1
        remaining = deadline - time.monotonic()
        if await token.run(try_connect(host, port, max(0.05, min(attempt_seconds, remaining)))):
            logger.debug("TCP endpoint reachable", extra={"host": host, "port": port, "attempts": attempts})
            return
        if time.monotonic() >= deadline:
            raise NetworkUnreachableError(host, port, timeout)
        await token.sleep(min(retry_delay, max(0.0, deadline - time.monotonic())))
