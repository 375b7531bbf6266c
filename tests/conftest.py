"""Shared pytest fixtures for vm-workspaces tests.

Everything here runs without QEMU or a guest: SSH is replaced by scripted
runners, the VM controller by an in-memory fake, and TCP endpoints by real
loopback listeners where a test needs a port to answer.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest

from tests.fakes import RecordingSink
from vm_workspaces.config import StartupConfig
from vm_workspaces.models import PortSet, Workspace


@pytest.fixture
async def listener() -> AsyncGenerator[Callable[[], Awaitable[int]], None]:
    """Factory for loopback TCP servers that accept and immediately close.

    Returns the bound port.
    """
    servers: list[asyncio.Server] = []

    async def _close_client(_reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    async def start() -> int:
        server = await asyncio.start_server(_close_client, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


@pytest.fixture
def make_workspace(tmp_path: Path) -> Callable[..., Workspace]:
    """Factory for workspaces with a real key file and a distinct disk path."""
    key = tmp_path / "id_ed25519"
    key.write_text("not a real key\n")
    counter = iter(range(1000))

    def _make(name: str = "dev", ports: PortSet | None = None, **fields: object) -> Workspace:
        params: dict[str, object] = {
            "name": name,
            "ssh_private_key_path": key,
            "disk_path": tmp_path / f"{name}-{next(counter)}.qcow2",
            "ports": ports or PortSet(),
        }
        params.update(fields)
        return Workspace(**params)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def fast_config() -> StartupConfig:
    """StartupConfig with every wait shrunk so whole flows finish in milliseconds."""
    return StartupConfig(
        qemu_grace_seconds=0,
        stop_grace_seconds=0.1,
        serial_wait_seconds=0.05,
        ssh_port_wait_seconds=0.3,
        api_wait_seconds=0.1,
        webui_wait_seconds=0.1,
        tcp_attempt_seconds=0.05,
        tcp_retry_delay_seconds=0.01,
        ssh_backoff_seconds=0,
        ssh_ready_initial_delay_seconds=0,
        ssh_ready_deadline_seconds=0.05,
        ssh_ready_backoff_base_seconds=0.01,
        ssh_ready_backoff_step_seconds=0,
        ssh_ready_backoff_max_seconds=0.01,
        repo_deadline_seconds=0.05,
        repo_backoff_step_seconds=0,
        cloud_init_timeout_seconds=1,
        env_deadline_seconds=0.05,
        env_poll_seconds=0.01,
        env_heal_settle_seconds=0,
        docker_deadline_seconds=0.05,
        docker_poll_seconds=0.01,
        warmup_max_attempts=3,
        warmup_interval_seconds=0.01,
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
