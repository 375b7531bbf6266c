"""Tests for the on-disk QEMU process registry and orphan sweep."""

from __future__ import annotations

import asyncio
from pathlib import Path

import psutil
import pytest

from vm_workspaces.process_registry import ProcessRecord, ProcessRegistry


@pytest.fixture
def registry(tmp_path: Path) -> ProcessRegistry:
    return ProcessRegistry(tmp_path / "state" / "processes.json")


class TestRegistryFile:
    async def test_missing_file_is_empty(self, registry: ProcessRegistry) -> None:
        assert await registry.load() == {}

    async def test_register_and_unregister(self, registry: ProcessRegistry) -> None:
        await registry.register(ProcessRecord(workspace_id="a", pid=100, create_time=1.5, disk_path="/d/a.qcow2"))
        await registry.register(ProcessRecord(workspace_id="b", pid=200))

        records = await registry.load()
        assert set(records) == {"a", "b"}
        assert records["a"].create_time == 1.5

        await registry.unregister("a")
        await registry.unregister("missing")
        assert set(await registry.load()) == {"b"}

    async def test_corrupt_file_discarded(self, registry: ProcessRegistry) -> None:
        registry.path.parent.mkdir(parents=True)
        registry.path.write_text("{not json")
        assert await registry.load() == {}


class TestSweepOrphans:
    async def test_dead_pid_dropped(self, registry: ProcessRegistry) -> None:
        proc = await asyncio.create_subprocess_exec("true")
        await proc.wait()
        await registry.register(ProcessRecord(workspace_id="gone", pid=proc.pid, create_time=0.0))

        killed = await registry.sweep_orphans()

        assert killed == []
        assert await registry.load() == {}

    async def test_live_orphan_killed(self, registry: ProcessRegistry) -> None:
        proc = await asyncio.create_subprocess_exec("sleep", "30")
        try:
            create_time = psutil.Process(proc.pid).create_time()
            await registry.register(ProcessRecord(workspace_id="orphan", pid=proc.pid, create_time=create_time))

            killed = await registry.sweep_orphans()

            assert [r.workspace_id for r in killed] == ["orphan"]
            assert await asyncio.wait_for(proc.wait(), timeout=5) != 0
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    async def test_reused_pid_not_killed(self, registry: ProcessRegistry) -> None:
        """A live PID with a different create time belongs to someone else."""
        proc = await asyncio.create_subprocess_exec("sleep", "30")
        try:
            await registry.register(ProcessRecord(workspace_id="stale", pid=proc.pid, create_time=1.0))

            killed = await registry.sweep_orphans()

            assert killed == []
            assert proc.returncode is None
            assert await registry.load() == {}
        finally:
            proc.kill()
            await proc.wait()

    async def test_kept_ids_untouched(self, registry: ProcessRegistry) -> None:
        await registry.register(ProcessRecord(workspace_id="live", pid=1))

        assert await registry.sweep_orphans(keep=frozenset({"live"})) == []
        assert set(await registry.load()) == {"live"}
