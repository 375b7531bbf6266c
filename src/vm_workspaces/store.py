"""Workspace persistence seam.

The orchestrator only needs "save now" / "load now". JsonWorkspaceStore is
the implementation the CLI uses: the whole list as one JSON document,
written atomically.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import aiofiles
import aiofiles.os
from pydantic import TypeAdapter

from vm_workspaces._logging import get_logger
from vm_workspaces.models import Workspace

logger = get_logger(__name__)

_WORKSPACES = TypeAdapter(list[Workspace])


class WorkspaceStore(Protocol):
    async def load(self) -> list[Workspace]: ...

    async def save(self, workspace: Workspace) -> None: ...


class JsonWorkspaceStore:
    """List of workspaces in a single JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    async def load(self) -> list[Workspace]:
        try:
            async with aiofiles.open(self.path) as f:
                raw = await f.read()
        except FileNotFoundError:
            return []
        return _WORKSPACES.validate_json(raw) if raw.strip() else []

    async def get(self, key: str) -> Workspace | None:
        """Find a workspace by id, or by name when no id matches."""
        workspaces = await self.load()
        by_id = next((w for w in workspaces if w.id == key), None)
        return by_id or next((w for w in workspaces if w.name == key), None)

    async def save(self, workspace: Workspace) -> None:
        """Insert or replace `workspace` (matched by id)."""
        async with self._lock:
            workspaces = [w for w in await self.load() if w.id != workspace.id]
            workspaces.append(workspace)
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(_WORKSPACES.dump_json(workspaces, indent=2))
            await aiofiles.os.replace(tmp, self.path)
        logger.debug("Workspace saved", extra={"workspace_id": workspace.id, "status": workspace.status.value})
