"""Data models for vm-workspaces."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from vm_workspaces import constants

Port = Annotated[int, Field(gt=0, le=constants.MAX_PORT)]


class VmStatus(str, Enum):
    """Workspace lifecycle status."""

    STOPPED = "stopped"
    STARTING = "starting"
    WARMING_UP = "warming_up"
    """VM is running but SSH has not stabilized; warmup retries in the background."""
    WARMING_UP_TIMEOUT = "warming_up_timeout"
    """Warmup gave up; the VM may still be running."""
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class PortSet(BaseModel):
    """Host ports forwarded to one workspace VM.

    Six named ports plus the web port; the two auxiliary ports are derived
    from the API port at fixed offsets. Names may share a number; real bind
    conflicts are caught by the reservation manager before launch.
    """

    model_config = ConfigDict(validate_assignment=True)

    ssh: Port = constants.DEFAULT_SSH_PORT
    web: Port = constants.DEFAULT_WEB_PORT
    api: Port = constants.DEFAULT_API_PORT
    ui_v1: Port = constants.DEFAULT_UI_V1_PORT
    ui_v2: Port = constants.DEFAULT_UI_V2_PORT
    qmp: Port = constants.DEFAULT_QMP_PORT
    serial: Port = constants.DEFAULT_SERIAL_PORT

    @property
    def aux_proxy(self) -> int:
        return self.api + constants.AUX_PROXY_PORT_OFFSET

    @property
    def aux_secrets_ui(self) -> int:
        return self.api + constants.AUX_SECRETS_UI_PORT_OFFSET

    def named_ports(self) -> list[tuple[str, int]]:
        """All host ports QEMU binds, in launch order, as (name, port) pairs.

        Derived auxiliary ports may fall outside the valid range; callers
        filter them.
        """
        return [
            ("ssh", self.ssh),
            ("web", self.web),
            ("api", self.api),
            ("ui_v1", self.ui_v1),
            ("ui_v2", self.ui_v2),
            ("aux_proxy", self.aux_proxy),
            ("aux_secrets_ui", self.aux_secrets_ui),
            ("qmp", self.qmp),
            ("serial", self.serial),
        ]


class Workspace(BaseModel):
    """A user-named VM instance with its own disk overlay, ports and status.

    Created and persisted by workspace management. The orchestrator only
    mutates status, is_running, last_run and ports.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(min_length=1)
    username: str = constants.DEFAULT_GUEST_USER
    ssh_private_key_path: Path
    repo_dir: str = Field(default=constants.DEFAULT_REPO_DIR, description="Guest repository directory")
    memory_mb: int = Field(default=4096, ge=256, description="Guest memory in MB")
    cpu_cores: int = Field(default=4, ge=1, le=64)
    disk_path: Path = Field(description="qcow2 overlay disk for this workspace")
    seed_iso_path: Path | None = Field(default=None, description="cloud-init seed ISO")
    ports: PortSet = Field(default_factory=PortSet)
    status: VmStatus = VmStatus.STOPPED
    is_running: bool = False
    last_run: datetime | None = None


class VmProfile(BaseModel):
    """Resolved launch parameters for one hypervisor process."""

    model_config = ConfigDict(frozen=True)

    workspace_id: str
    qemu_binary: Path
    accelerator: str
    memory_mb: int
    cpu_cores: int
    disk_path: Path
    seed_iso_path: Path | None
    ports: PortSet

    @classmethod
    def from_workspace(cls, workspace: Workspace, qemu_binary: Path, accelerator: str) -> VmProfile:
        return cls(
            workspace_id=workspace.id,
            qemu_binary=qemu_binary,
            accelerator=accelerator,
            memory_mb=workspace.memory_mb,
            cpu_cores=workspace.cpu_cores,
            disk_path=workspace.disk_path,
            seed_iso_path=workspace.seed_iso_path,
            ports=workspace.ports.model_copy(),
        )


@dataclass(frozen=True, slots=True)
class StartOutcome:
    """Uniform (success, message) result of every probe and of a start attempt."""

    success: bool
    message: str

    @classmethod
    def ok(cls, message: str) -> StartOutcome:
        return cls(True, message)

    @classmethod
    def fail(cls, message: str) -> StartOutcome:
        return cls(False, message)


# ============================================================================
# Progress messages
# ============================================================================


class Stage(str, Enum):
    """Startup stages, in execution order."""

    QEMU = "qemu"
    SSH = "ssh"
    SSH_STABLE = "ssh_stable"
    UPDATES = "updates"
    ENV = "env"
    DOCKER = "docker"
    API = "api"
    WEBUI = "webui"
    CONNECTION = "connection"
    DONE = "done"


class StageState(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class StageUpdate(BaseModel):
    """Progress of one named stage."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["stage"] = "stage"
    stage: Stage
    state: StageState
    message: str


class LogLine(BaseModel):
    """Free-form diagnostic line (serial output, probe notes, warmup notices)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["log"] = "log"
    text: str


ProgressMessage = Annotated[StageUpdate | LogLine, Field(discriminator="kind")]


class CloudInitStatus(str, Enum):
    DONE = "done"
    RUNNING = "running"
    UNKNOWN = "unknown"
