"""Host port reservation for concurrent workspace starts.

One PortReservationManager is shared by every start in the process. It
keeps a flat set of reserved ports plus a map of start id to the ports that
start owns, both behind a single lock.

Reservation is two-phase:
1. Under the lock: purge stale entries, reject ports owned by another
   start (PortConflictError), then record the candidates.
2. Outside the lock: bind-probe every candidate on loopback. A port held by
   a third-party process releases the reservation and raises PortBusyError.

Recording before probing means two concurrent starts can never both pass
phase 1 for the same port, even though the OS probe itself is racy.

Self-heal: when no start is active, any leftover entry is an orphan from a
crashed attempt and the whole table is cleared.
"""

from __future__ import annotations

import socket
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.exceptions import PortBusyError, PortConflictError
from vm_workspaces.models import PortSet, StartOutcome, Workspace

logger = get_logger(__name__)


def is_port_available(port: int, host: str = constants.LOOPBACK_HOST) -> bool:
    """Bind and immediately release a listener on `host:port`.

    Returns:
        True if nothing else is bound to the port.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            s.listen(1)
        except OSError:
            return False
    return True


def candidate_ports(ports: PortSet) -> list[int]:
    """Every host port QEMU will bind for `ports`, deduplicated, out-of-range dropped."""
    seen: dict[int, None] = {}
    for _, port in ports.named_ports():
        if constants.MIN_PORT <= port <= constants.MAX_PORT:
            seen.setdefault(port)
    return list(seen)


def _format_endpoints(ports: Iterable[int]) -> str:
    return ", ".join(f"{constants.LOOPBACK_HOST}:{p}" for p in ports)


@dataclass(frozen=True, slots=True)
class PortReservation:
    """Ports recorded for one start attempt."""

    start_id: str
    ports: frozenset[int]


class PortReservationManager:
    """Process-wide reservation table for host ports of in-flight starts.

    Callers mark a start active with begin_start() before reserving and call
    end_start() in their cleanup path. reserve() under a start id that was
    never begun opens an implicit start, which ends once all of its ports are
    released (or at end_start()). Reservations under a start id that is not
    active survive only until the next purge.
    """

    def __init__(
        self,
        *,
        host: str = constants.LOOPBACK_HOST,
        probe: Callable[[int], bool] | None = None,
    ) -> None:
        """Args:
        host: Address forwarded ports bind on.
        probe: OS availability check; defaults to a loopback bind probe.
        """
        self._host = host
        self._probe = probe or (lambda port: is_port_available(port, host))
        self._lock = threading.Lock()
        self._reserved: set[int] = set()
        self._by_start: dict[str, frozenset[int]] = {}
        self._active: set[str] = set()
        self._implicit: set[str] = set()

    # ------------------------------------------------------------------
    # Active starts
    # ------------------------------------------------------------------

    def begin_start(self, start_id: str) -> None:
        with self._lock:
            self._active.add(start_id)

    def end_start(self, start_id: str) -> None:
        """Drop the start's reservations and mark it inactive.

        Clears the whole table once no start remains active.
        """
        with self._lock:
            self._drop_locked(start_id)
            self._active.discard(start_id)
            self._implicit.discard(start_id)
            if not self._active:
                self._self_heal_locked()

    def is_start_in_progress(self, start_id: str) -> bool:
        with self._lock:
            return start_id in self._active

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve(self, workspace: Workspace, start_id: str | None = None) -> PortReservation:
        """Reserve every host port of `workspace` for one start attempt.

        A start that reserves again (e.g. after a port remap) replaces its
        previous reservation.

        Args:
            workspace: Workspace whose PortSet is reserved.
            start_id: Owner of the reservation; defaults to the workspace id.

        Returns:
            The recorded reservation, to be passed to release().

        Raises:
            PortConflictError: A port is reserved by another start.
            PortBusyError: A port is bound by some other process.
        """
        sid = start_id or workspace.id
        candidates = candidate_ports(workspace.ports)

        with self._lock:
            self._purge_stale_locked()
            if sid not in self._active:
                self._active.add(sid)
                self._implicit.add(sid)
            previous = self._drop_locked(sid)
            for port in candidates:
                if port in self._reserved:
                    if previous:
                        self._by_start[sid] = previous
                        self._reserved.update(previous)
                    self._retire_implicit_locked(sid)
                    logger.warning(
                        "Host port reservation conflict",
                        extra={"workspace_id": workspace.id, "start_id": sid, "port": port},
                    )
                    raise PortConflictError(port, {"workspace_id": workspace.id, "start_id": sid})
            reservation = PortReservation(sid, frozenset(candidates))
            self._reserved.update(reservation.ports)
            self._by_start[sid] = reservation.ports

        busy = [port for port in candidates if not self._probe(port)]
        if busy:
            self.release(reservation)
            raise PortBusyError(
                f"Host port(s) in use: {_format_endpoints(busy)}.",
                busy,
                {"workspace_id": workspace.id},
            )

        logger.debug("Reserved host ports", extra={"workspace_id": workspace.id, "ports": sorted(reservation.ports)})
        return reservation

    def release(self, reservation: PortReservation) -> None:
        """Release ports of `reservation` that its start still owns.

        Ports owned by any other start are never touched.
        """
        with self._lock:
            owned = self._by_start.get(reservation.start_id)
            if owned is None:
                return
            freed = owned & reservation.ports
            self._reserved.difference_update(freed)
            remaining = owned - freed
            if remaining:
                self._by_start[reservation.start_id] = remaining
            else:
                del self._by_start[reservation.start_id]
                self._retire_implicit_locked(reservation.start_id)

    def release_workspace(self, start_id: str) -> None:
        """Release everything reserved under `start_id`."""
        with self._lock:
            self._drop_locked(start_id)
            self._retire_implicit_locked(start_id)

    def snapshot(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)

    def purge_stale(self) -> None:
        with self._lock:
            self._purge_stale_locked()

    def _drop_locked(self, start_id: str) -> frozenset[int]:
        owned = self._by_start.pop(start_id, frozenset())
        self._reserved.difference_update(owned)
        return owned

    def _retire_implicit_locked(self, start_id: str) -> None:
        if start_id in self._implicit and start_id not in self._by_start:
            self._implicit.discard(start_id)
            self._active.discard(start_id)
            if not self._active:
                self._self_heal_locked()

    def _purge_stale_locked(self) -> None:
        if not self._active:
            self._self_heal_locked()
            return
        for sid in [sid for sid in self._by_start if sid not in self._active]:
            logger.warning("Dropping stale port reservation", extra={"start_id": sid})
            self._drop_locked(sid)

    def _self_heal_locked(self) -> None:
        if self._reserved or self._by_start:
            logger.warning(
                "No active starts, clearing orphaned port reservations",
                extra={"ports": sorted(self._reserved)},
            )
        self._reserved.clear()
        self._by_start.clear()

    # ------------------------------------------------------------------
    # Free-port search and preflight
    # ------------------------------------------------------------------

    def find_next_available_port(self, start: int, reserved: Iterable[int] = ()) -> int:
        """First free port at or above `start`, wrapping to the scan floor.

        Args:
            start: First port to try; clamped to [1024, 65535].
            reserved: Ports to skip even if the OS reports them free.

        Raises:
            PortBusyError: No free port in the whole range.
        """
        excluded = set(reserved)
        first = min(max(start, constants.PORT_SCAN_FLOOR), constants.MAX_PORT)
        for port in (*range(first, constants.MAX_PORT + 1), *range(constants.PORT_SCAN_FLOOR, first)):
            if port not in excluded and self._probe(port):
                return port
        raise PortBusyError(f"No free local host port available from {first} (wrapped at {constants.MAX_PORT}).")

    def busy_start_ports(self, workspace: Workspace) -> list[tuple[str, int]]:
        """Named ports of `workspace` that fail the OS bind probe."""
        busy: list[tuple[str, int]] = []
        seen: set[int] = set()
        for name, port in workspace.ports.named_ports():
            if not constants.MIN_PORT <= port <= constants.MAX_PORT or port in seen:
                continue
            seen.add(port)
            if not self._probe(port):
                busy.append((name, port))
        return busy

    def ensure_start_ports_ready(self, workspace: Workspace) -> StartOutcome:
        """Preflight OS-level port availability before launch.

        When UI-v2 is the only busy port it is remapped in place; any other
        busy port fails the preflight.
        """
        busy = self.busy_start_ports(workspace)
        if not busy:
            return StartOutcome.ok("Host ports are available.")

        listed = ", ".join(f"{name}={constants.LOOPBACK_HOST}:{port}" for name, port in busy)
        reason = f"Host port(s) in use: {listed}"
        if [name for name, _ in busy] == ["ui_v2"]:
            return self.reassign_ui_v2_port(workspace, reason)
        return StartOutcome.fail(f"{reason}. Use Auto Assign Ports or free the conflicting ports.")

    def reassign_ui_v2_port(self, workspace: Workspace, reason: str) -> StartOutcome:
        """Move the workspace's UI-v2 port to the next free port above it.

        Skips the workspace's other ports and every port currently reserved
        by any start (including this one).
        """
        current = workspace.ports.ui_v2
        excluded = {port for name, port in workspace.ports.named_ports() if name != "ui_v2"}
        excluded.update(self.snapshot())
        excluded.add(current)
        try:
            new_port = self.find_next_available_port(max(constants.PORT_SCAN_FLOOR, current + 1), excluded)
        except PortBusyError as e:
            return StartOutcome.fail(f"{reason}. {e.message}")

        workspace.ports.ui_v2 = new_port
        logger.info(
            "Remapped UI-v2 host port",
            extra={"workspace_id": workspace.id, "old_port": current, "new_port": new_port},
        )
        return StartOutcome.ok(
            f"{reason}. UI-v2 remapped {constants.LOOPBACK_HOST}:{current} -> {constants.LOOPBACK_HOST}:{new_port}."
        )
