"""On-disk record of launched QEMU processes.

Written after every launch and kill so a crashed or killed manager can find
the VMs it left behind. sweep_orphans() kills recorded processes that are
still alive and verifiably the same process (psutil create_time matches),
never a PID the OS has since reused.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import aiofiles
import aiofiles.os
import psutil
from pydantic import BaseModel, TypeAdapter, ValidationError

from vm_workspaces._logging import get_logger
from vm_workspaces.platform_utils import kill_psutil_tree

logger = get_logger(__name__)

# psutil create_time is float seconds; allow for rounding in the JSON round trip.
_CREATE_TIME_TOLERANCE = 0.01


class ProcessRecord(BaseModel):
    workspace_id: str
    pid: int
    create_time: float | None = None
    disk_path: str = ""


_RECORDS = TypeAdapter(dict[str, ProcessRecord])


def _is_same_process(record: ProcessRecord) -> psutil.Process | None:
    try:
        proc = psutil.Process(record.pid)
        if record.create_time is not None and abs(proc.create_time() - record.create_time) > _CREATE_TIME_TOLERANCE:
            return None
        return proc if proc.is_running() else None
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


class ProcessRegistry:
    """JSON file of workspace id -> ProcessRecord."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    async def load(self) -> dict[str, ProcessRecord]:
        try:
            async with aiofiles.open(self.path) as f:
                raw = await f.read()
        except FileNotFoundError:
            return {}
        try:
            return _RECORDS.validate_json(raw) if raw.strip() else {}
        except ValidationError:
            logger.warning("Discarding unreadable process registry", extra={"path": str(self.path)})
            return {}

    async def _save(self, records: dict[str, ProcessRecord]) -> None:
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(_RECORDS.dump_json(records, indent=2))
        await aiofiles.os.replace(tmp, self.path)

    async def register(self, record: ProcessRecord) -> None:
        async with self._lock:
            records = await self.load()
            records[record.workspace_id] = record
            await self._save(records)

    async def unregister(self, workspace_id: str) -> None:
        async with self._lock:
            records = await self.load()
            if records.pop(workspace_id, None) is not None:
                await self._save(records)

    async def sweep_orphans(self, keep: frozenset[str] = frozenset()) -> list[ProcessRecord]:
        """Kill recorded processes not in `keep` and drop their records.

        Args:
            keep: Workspace ids whose processes are tracked by a live controller.

        Returns:
            Records whose process was found alive and killed.
        """
        killed: list[ProcessRecord] = []
        async with self._lock:
            records = await self.load()
            for workspace_id, record in list(records.items()):
                if workspace_id in keep:
                    continue
                proc = await asyncio.to_thread(_is_same_process, record)
                if proc is not None:
                    logger.warning(
                        "Killing orphaned QEMU process",
                        extra={"workspace_id": workspace_id, "pid": record.pid},
                    )
                    with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                        await asyncio.to_thread(kill_psutil_tree, proc)
                    killed.append(record)
                del records[workspace_id]
            await self._save(records)
        return killed
