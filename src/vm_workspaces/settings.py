"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vm_workspaces.platform_utils import HostOS, detect_host_os, get_data_dir


def _default_accelerator() -> str:
    match detect_host_os():
        case HostOS.LINUX:
            return "kvm:tcg"
        case HostOS.MACOS:
            return "hvf:tcg"
        case HostOS.UNKNOWN:
            return "tcg"


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VM_WORKSPACES_ prefix.
    Example: VM_WORKSPACES_QEMU_BINARY=/opt/qemu/bin/qemu-system-x86_64
    """

    model_config = SettingsConfigDict(
        env_prefix="VM_WORKSPACES_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # QEMU
    qemu_binary: Path = Path("/usr/bin/qemu-system-x86_64")
    accelerator: str = Field(default_factory=_default_accelerator)
    """QEMU -machine accel= value; colon-separated fallbacks are tried in order."""

    # State files, all under the per-user data directory by default
    data_dir: Path = Field(default_factory=get_data_dir)
    known_hosts_file: Path | None = None
    process_registry_file: Path | None = None
    workspace_store_file: Path | None = None

    def resolved_known_hosts_file(self) -> Path:
        return self.known_hosts_file or self.data_dir / "known_hosts"

    def resolved_process_registry_file(self) -> Path:
        return self.process_registry_file or self.data_dir / "processes.json"

    def resolved_workspace_store_file(self) -> Path:
        return self.workspace_store_file or self.data_dir / "workspaces.json"
