"""Tests for QmpControl and the controller's QMP paths.

A loopback server speaks just enough QMP (greeting, capability negotiation,
id-tagged replies) for qemu.qmp's QMPClient to talk to it.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest

from tests.fakes import free_port
from vm_workspaces.exceptions import QmpError
from vm_workspaces.models import PortSet, Workspace
from vm_workspaces.qmp_client import QmpControl
from vm_workspaces.settings import Settings
from vm_workspaces.vm_controller import VmProcessController

GREETING = {
    "QMP": {
        "version": {"qemu": {"micro": 0, "minor": 2, "major": 8}, "package": ""},
        "capabilities": [],
    }
}

# ============================================================================
# Fake QMP server
# ============================================================================


class FakeQmpServer:
    """Records executed commands; replies from `replies` (default: empty return)."""

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.replies: dict[str, dict[str, Any]] = {
            "query-status": {"return": {"status": "running", "running": True, "singlestep": False}},
        }
        self.server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        assert self.server is not None
        return self.server.sockets[0].getsockname()[1]

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.write(json.dumps(GREETING).encode() + b"\r\n")
        await writer.drain()
        try:
            while line := await reader.readline():
                msg = json.loads(line)
                command = msg.get("execute", "")
                self.commands.append(command)
                reply = dict(self.replies.get(command, {"return": {}}))
                if "id" in msg:
                    reply["id"] = msg["id"]
                writer.write(json.dumps(reply).encode() + b"\r\n")
                await writer.drain()
                if command == "quit":
                    break
        except ConnectionError:
            pass
        finally:
            writer.close()


@pytest.fixture
async def qmp_server() -> AsyncGenerator[FakeQmpServer, None]:
    fake = FakeQmpServer()
    fake.server = await asyncio.start_server(fake.handle, "127.0.0.1", 0)
    yield fake
    fake.server.close()
    await fake.server.wait_closed()


# ============================================================================
# QmpControl
# ============================================================================


class TestQmpControl:
    async def test_query_status(self, qmp_server: FakeQmpServer) -> None:
        async with QmpControl(qmp_server.port) as qmp:
            assert await qmp.query_status() == "running"
        assert qmp_server.commands == ["qmp_capabilities", "query-status"]

    async def test_pause_resume_reset(self, qmp_server: FakeQmpServer) -> None:
        async with QmpControl(qmp_server.port) as qmp:
            await qmp.stop()
            await qmp.cont()
            await qmp.system_reset()
            await qmp.system_powerdown()
        assert qmp_server.commands[1:] == ["stop", "cont", "system_reset", "system_powerdown"]

    async def test_quit(self, qmp_server: FakeQmpServer) -> None:
        async with QmpControl(qmp_server.port) as qmp:
            await qmp.quit()
        assert qmp_server.commands[-1] == "quit"

    async def test_command_error(self, qmp_server: FakeQmpServer) -> None:
        qmp_server.replies["system_reset"] = {"error": {"class": "GenericError", "desc": "reset refused"}}
        async with QmpControl(qmp_server.port) as qmp:
            with pytest.raises(QmpError, match="QMP system_reset failed"):
                await qmp.system_reset()

    async def test_connect_refused(self) -> None:
        with pytest.raises(QmpError, match="QMP connection failed"):
            async with QmpControl(free_port()):
                pass

    async def test_execute_without_connect(self) -> None:
        with pytest.raises(QmpError, match="not connected"):
            await QmpControl(free_port()).execute("query-status")


# ============================================================================
# Controller QMP paths
# ============================================================================


@pytest.fixture
def controller(tmp_path: Path) -> VmProcessController:
    script = tmp_path / "fake-qemu"
    script.write_text("#!/bin/sh\nexec sleep 30\n")
    script.chmod(0o755)
    return VmProcessController(
        Settings(qemu_binary=script, accelerator="tcg", data_dir=tmp_path),
        stop_grace_seconds=0.2,
    )


class TestControllerQmp:
    async def test_controls(
        self, controller: VmProcessController, qmp_server: FakeQmpServer, make_workspace: Callable[..., Workspace]
    ) -> None:
        ws = make_workspace(ports=PortSet(qmp=qmp_server.port))

        await controller.pause(ws)
        await controller.resume(ws)
        await controller.reset(ws)
        status = await controller.query_status(ws)

        assert status == "running"
        assert [c for c in qmp_server.commands if c != "qmp_capabilities"] == [
            "stop",
            "cont",
            "system_reset",
            "query-status",
        ]

    async def test_stop_quits_then_reaps(
        self, controller: VmProcessController, qmp_server: FakeQmpServer, make_workspace: Callable[..., Workspace]
    ) -> None:
        """The fake binary ignores quit, so the grace period ends in a kill."""
        ws = make_workspace(ports=PortSet(qmp=qmp_server.port))
        process = await controller.start(controller.profile_for(ws))

        outcome = await controller.stop(ws)

        assert outcome.message == "VM stopped."
        assert "quit" in qmp_server.commands
        assert process.returncode is not None
        assert controller.tracked_ids() == frozenset()
