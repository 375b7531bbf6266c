"""Structured startup progress and failure reason tags.

Progress flows to the caller as typed messages (StageUpdate or LogLine)
through a plain callback. Every message is also written to the library log
so headless runs keep the same trail.

Failure messages carry a coarse reason tag, ``reason=<tag>; <message>``,
derived by keyword rules evaluated in a fixed order. The first matching
rule wins, so a message mentioning both a host port and a read-only
filesystem is tagged port_conflict.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Final

from vm_workspaces._logging import get_logger
from vm_workspaces.models import LogLine, ProgressMessage, Stage, StageState, StageUpdate, StartOutcome

logger = get_logger(__name__)

ProgressSink = Callable[[ProgressMessage], None]


class StartupReason(str, Enum):
    """Machine-classifiable failure reasons."""

    HOSTKEY_MISMATCH = "hostkey_mismatch"
    PORT_CONFLICT = "port_conflict"
    ENV_MISSING = "env_missing"
    STORAGE_RO = "storage_ro"
    SSH_UNSTABLE = "ssh_unstable"
    QEMU_EXITED = "qemu_exited"
    WEBUI_UNREACHABLE = "webui_unreachable"
    CONNECTION_FAILED = "connection_failed"
    STARTUP_FAILED = "startup_failed"


_REASON_RULES: Final[tuple[tuple[StartupReason, tuple[str, ...]], ...]] = (
    (StartupReason.HOSTKEY_MISMATCH, ("hostkey_mismatch", "host key mismatch")),
    (StartupReason.PORT_CONFLICT, ("host port", "already in use", "port reservation conflict")),
    (StartupReason.ENV_MISSING, ("runtime .env", "missing-secret", "missing-file")),
    (StartupReason.STORAGE_RO, ("read-only file system", "no space left on device", "filesystem issue")),
    (
        StartupReason.SSH_UNSTABLE,
        ("ssh transient error", "ssh became reachable but command channel did not stabilize"),
    ),
)

_REASON_PREFIX: Final[str] = "reason="


def classify_startup_reason(message: str) -> StartupReason | None:
    """Return the first reason whose keywords occur in `message` (case-insensitive)."""
    lowered = message.lower()
    for reason, keywords in _REASON_RULES:
        if any(keyword in lowered for keyword in keywords):
            return reason
    return None


def with_startup_reason(fallback: StartupReason, message: str) -> str:
    """Prefix `message` with a reason tag.

    Args:
        fallback: Tag used when no keyword rule matches.
        message: Failure text; an existing ``reason=`` prefix is kept as is.

    Returns:
        ``reason=<tag>; <message>``
    """
    text = (message or "").strip()
    if not text:
        return f"{_REASON_PREFIX}{fallback.value}; startup failed."
    if text.startswith(_REASON_PREFIX):
        return text
    reason = classify_startup_reason(text) or fallback
    return f"{_REASON_PREFIX}{reason.value}; {text}"


class StartupProgressReporter:
    """Sends progress for one workspace to an optional sink and to the log.

    A sink that raises is logged and otherwise ignored; the start attempt
    must not depend on the presentation layer.
    """

    def __init__(self, sink: ProgressSink | None = None, *, workspace_id: str = "") -> None:
        self._sink = sink
        self._workspace_id = workspace_id

    @property
    def has_sink(self) -> bool:
        return self._sink is not None

    def stage(self, stage: Stage, state: StageState, message: str) -> None:
        extra = {"workspace_id": self._workspace_id, "stage": stage.value, "state": state.value}
        if state == StageState.FAILED:
            logger.warning(f"[{stage.value}] {message}", extra=extra)
        else:
            logger.info(f"[{stage.value}] {message}", extra=extra)
        self._emit(StageUpdate(stage=stage, state=state, message=message))

    def log(self, text: str) -> None:
        logger.debug(text, extra={"workspace_id": self._workspace_id})
        self._emit(LogLine(text=text))

    def fail(self, stage: Stage, fallback: StartupReason, message: str) -> StartOutcome:
        """Report `stage` and the overall start as failed with a tagged message."""
        tagged = with_startup_reason(fallback, message)
        self.stage(stage, StageState.FAILED, tagged)
        self.stage(Stage.DONE, StageState.FAILED, tagged)
        return StartOutcome.fail(tagged)

    def _emit(self, message: ProgressMessage) -> None:
        if self._sink is None:
            return
        try:
            self._sink(message)
        except Exception:
            logger.exception("Progress sink raised", extra={"workspace_id": self._workspace_id})
