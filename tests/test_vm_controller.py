"""Tests for VmProcessController.

A shell script stands in for the QEMU binary: it ignores its arguments,
writes a line to stderr and sleeps, so launch, tracking, kill and the
QMP-unavailable stop fallback all run against a real child process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from tests.fakes import free_port
from vm_workspaces.exceptions import ProcessLaunchError
from vm_workspaces.models import PortSet, Workspace
from vm_workspaces.process_registry import ProcessRegistry
from vm_workspaces.settings import Settings
from vm_workspaces.vm_controller import VmProcessController

# ============================================================================
# Fixtures
# ============================================================================


def _script(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "fake-qemu"
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def registry(tmp_path: Path) -> ProcessRegistry:
    return ProcessRegistry(tmp_path / "processes.json")


@pytest.fixture
def controller_for(tmp_path: Path, registry: ProcessRegistry) -> Callable[[str], VmProcessController]:
    def _make(body: str = "echo 'qemu: warming up' >&2\nexec sleep 30") -> VmProcessController:
        settings = Settings(qemu_binary=_script(tmp_path, body), accelerator="tcg", data_dir=tmp_path)
        return VmProcessController(settings, registry=registry, stop_grace_seconds=0.2)

    return _make


# ============================================================================
# Launch
# ============================================================================


class TestStart:
    async def test_missing_binary(self, tmp_path: Path, make_workspace: Callable[..., Workspace]) -> None:
        controller = VmProcessController(Settings(qemu_binary=tmp_path / "nope", data_dir=tmp_path))
        ws = make_workspace()

        with pytest.raises(ProcessLaunchError, match="QEMU binary not found"):
            await controller.start(controller.profile_for(ws))
        assert controller.tracked_ids() == frozenset()

    async def test_start_tracks_and_registers(
        self,
        controller_for: Callable[..., VmProcessController],
        registry: ProcessRegistry,
        make_workspace: Callable[..., Workspace],
    ) -> None:
        controller = controller_for()
        ws = make_workspace()
        try:
            process = await controller.start(controller.profile_for(ws))

            assert controller.tracked_ids() == frozenset({ws.id})
            assert controller.process(ws.id) is process
            assert controller.profile(ws.id) == controller.profile_for(ws)
            assert await controller.is_running(ws.id)
            records = await registry.load()
            assert records[ws.id].pid == process.pid
            assert records[ws.id].disk_path == str(ws.disk_path)
        finally:
            await controller.shutdown()

    async def test_second_start_rejected(
        self, controller_for: Callable[..., VmProcessController], make_workspace: Callable[..., Workspace]
    ) -> None:
        controller = controller_for()
        ws = make_workspace()
        try:
            await controller.start(controller.profile_for(ws))
            with pytest.raises(ProcessLaunchError, match="already has a tracked QEMU process"):
                await controller.start(controller.profile_for(ws))
        finally:
            await controller.shutdown()

    async def test_stderr_tail_collected(
        self, controller_for: Callable[..., VmProcessController], make_workspace: Callable[..., Workspace]
    ) -> None:
        controller = controller_for()
        ws = make_workspace()
        try:
            await controller.start(controller.profile_for(ws))
            for _ in range(100):
                if controller.stderr_tail(ws.id):
                    break
                await asyncio.sleep(0.02)
            assert controller.stderr_tail(ws.id) == ["qemu: warming up"]
        finally:
            await controller.shutdown()

    async def test_immediate_exit_visible(
        self, controller_for: Callable[..., VmProcessController], make_workspace: Callable[..., Workspace]
    ) -> None:
        controller = controller_for("exit 3")
        ws = make_workspace()
        try:
            process = await controller.start(controller.profile_for(ws))
            assert await asyncio.wait_for(process.wait(), timeout=5) == 3
            assert not await controller.is_running(ws.id)
        finally:
            await controller.shutdown()


# ============================================================================
# Stop / kill
# ============================================================================


class TestKill:
    async def test_kill_is_idempotent(
        self,
        controller_for: Callable[..., VmProcessController],
        registry: ProcessRegistry,
        make_workspace: Callable[..., Workspace],
    ) -> None:
        controller = controller_for()
        ws = make_workspace()
        process = await controller.start(controller.profile_for(ws))

        assert await controller.kill(ws.id, force=True)
        assert process.returncode is not None
        assert controller.tracked_ids() == frozenset()
        assert await registry.load() == {}
        assert await controller.kill(ws.id, force=True)

    async def test_unknown_workspace(self, controller_for: Callable[..., VmProcessController]) -> None:
        assert await controller_for().kill("missing", force=False)


class TestStop:
    async def test_falls_back_to_kill_without_qmp(
        self, controller_for: Callable[..., VmProcessController], make_workspace: Callable[..., Workspace]
    ) -> None:
        controller = controller_for()
        ws = make_workspace(ports=PortSet(qmp=free_port()))
        process = await controller.start(controller.profile_for(ws))

        outcome = await controller.stop(ws)

        assert outcome.success
        assert outcome.message.startswith("VM stopped by process kill (")
        assert process.returncode is not None
        assert controller.tracked_ids() == frozenset()

    async def test_untracked_workspace_without_qmp(
        self, controller_for: Callable[..., VmProcessController], make_workspace: Callable[..., Workspace]
    ) -> None:
        """Nothing tracked and nothing listening: the VM is already gone."""
        ws = make_workspace(ports=PortSet(qmp=free_port()))
        outcome = await controller_for().stop(ws)
        assert outcome.success

    async def test_shutdown_kills_all(
        self, controller_for: Callable[..., VmProcessController], make_workspace: Callable[..., Workspace]
    ) -> None:
        controller = controller_for()
        processes = []
        for name in ("a", "b"):
            ws = make_workspace(name)
            processes.append(await controller.start(controller.profile_for(ws)))

        await controller.shutdown()

        assert controller.tracked_ids() == frozenset()
        assert all(p.returncode is not None for p in processes)
