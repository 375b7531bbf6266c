"""QEMU command line builder for workspace VMs.

Every host port is bound on loopback: forwarded guest services via
user-mode networking hostfwd, plus TCP chardevs for QMP and the serial
console (server=on,wait=off so QEMU boots without a client attached).
"""

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.models import PortSet, VmProfile

logger = get_logger(__name__)


def _qemu_value(value: object) -> str:
    """Escape a value for a QEMU -option key=value list (commas are doubled)."""
    return str(value).replace(",", ",,")


def forwarded_ports(ports: PortSet) -> list[tuple[int, int]]:
    """(host, guest) pairs for every hostfwd rule; out-of-range host ports are skipped."""
    pairs = [
        (ports.ssh, constants.GUEST_SSH_PORT),
        (ports.web, constants.GUEST_WEB_PORT),
        (ports.api, constants.GUEST_API_PORT),
        (ports.ui_v1, constants.GUEST_UI_V1_PORT),
        (ports.ui_v2, constants.GUEST_UI_V2_PORT),
        (ports.aux_proxy, constants.GUEST_AUX_PROXY_PORT),
        (ports.aux_secrets_ui, constants.GUEST_AUX_SECRETS_UI_PORT),
    ]
    return [(host, guest) for host, guest in pairs if constants.MIN_PORT <= host <= constants.MAX_PORT]


def build_qemu_cmd(profile: VmProfile) -> list[str]:
    """Build the QEMU argv for `profile`.

    Args:
        profile: Resolved launch parameters (binary, accel, sizing, disks, ports)

    Returns:
        argv list suitable for asyncio.create_subprocess_exec
    """
    host = constants.LOOPBACK_HOST
    ports = profile.ports
    hostfwd = ",".join(f"hostfwd=tcp:{host}:{h}-:{g}" for h, g in forwarded_ports(ports))

    args = [
        str(profile.qemu_binary),
        "-name",
        f"workspace-{profile.workspace_id}",
        "-machine",
        f"q35,accel={profile.accelerator}",
        "-m",
        str(profile.memory_mb),
        "-smp",
        str(profile.cpu_cores),
        "-drive",
        f"file={_qemu_value(profile.disk_path)},if=virtio,format=qcow2",
    ]
    if profile.seed_iso_path is not None:
        args.extend(["-drive", f"file={_qemu_value(profile.seed_iso_path)},media=cdrom,readonly=on"])

    args.extend(
        [
            "-netdev",
            f"user,id=n1,{hostfwd}",
            "-device",
            "virtio-net-pci,netdev=n1",
            "-qmp",
            f"tcp:{host}:{ports.qmp},server=on,wait=off",
            "-serial",
            f"tcp:{host}:{ports.serial},server=on,wait=off",
            "-display",
            "none",
            "-no-shutdown",
        ]
    )

    logger.debug(
        "Built QEMU command",
        extra={"workspace_id": profile.workspace_id, "forwards": forwarded_ports(ports), "argc": len(args)},
    )
    return args
