"""Serial console capture for startup diagnostics.

QEMU exposes the guest serial console as a raw TCP stream. The reader
segments it into lines, strips terminal escapes and noise, forwards each
line to the progress sink and promotes a few coarse stage hints (package
updates, repository/env setup, container stack start) exactly once each.

The capture is best-effort UX: it never fails a start, and it always
reports why it stopped.
"""

from __future__ import annotations

import asyncio
import codecs
import re
import time
from collections.abc import Callable
from typing import Final

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.exceptions import StartCancelledError
from vm_workspaces.models import Stage, StageState
from vm_workspaces.progress import StartupProgressReporter

logger = get_logger(__name__)

_ESCAPE_RE: Final = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC, BEL or ST terminated
    r"|\x1b[()#][0-9A-Za-z]"  # charset selection
    r"|\x1b[@-_]"  # other two-byte escapes
)
_CONTROL_RE: Final = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_DELIMITER_RE: Final = re.compile(r"[\r\n]+")

_NOISE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"Started (?:Session \S+|session-\S+\.scope).* of [Uu]ser"),  # logind session churn
    re.compile(r"^\+q[0-9A-Fa-f]+$"),  # XTGETTCAP replies
    re.compile(r"^\[[0-9A-Fa-f]{1,40}\]$"),  # bare terminal query residue
)

_DIAGNOSTICS_CLOSED = f"{constants.SERIAL_LINE_PREFIX}stream closed by guest or QEMU."


def strip_terminal_escapes(text: str) -> str:
    return _CONTROL_RE.sub("", _ESCAPE_RE.sub("", text))


def normalize_serial_line(raw: str) -> str | None:
    """Clean one serial line; None if nothing worth showing remains."""
    line = strip_terminal_escapes(raw).strip()
    if not line:
        return None
    if any(pattern.search(line) for pattern in _NOISE_PATTERNS):
        return None
    if len(line) > constants.SERIAL_MAX_LINE_CHARS:
        line = line[: constants.SERIAL_MAX_LINE_CHARS] + "..."
    return line


class SerialLineSegmenter:
    """Splits a character stream on CR/LF; runs of delimiters count as one.

    An undelimited buffer (carriage-return-less progress output, or a
    console with no newline at all) is flushed once it holds at least
    PARTIAL_FLUSH_CHARS and nothing was flushed for PARTIAL_FLUSH_SECONDS.
    """

    def __init__(
        self,
        *,
        partial_chars: int = constants.SERIAL_PARTIAL_FLUSH_CHARS,
        partial_seconds: float = constants.SERIAL_PARTIAL_FLUSH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._partial_chars = partial_chars
        self._partial_seconds = partial_seconds
        self._clock = clock
        self._buffer = ""
        self._last_flush = clock()

    def feed(self, text: str) -> list[str]:
        parts = _DELIMITER_RE.split(self._buffer + text)
        self._buffer = parts.pop()
        lines = [part for part in parts if part]
        if lines:
            self._last_flush = self._clock()
        return lines + self.poll()

    def poll(self) -> list[str]:
        """Flush a stale partial buffer, if due."""
        if len(self._buffer) >= self._partial_chars and self._clock() - self._last_flush >= self._partial_seconds:
            return self.flush()
        return []

    def flush(self) -> list[str]:
        line, self._buffer = self._buffer, ""
        self._last_flush = self._clock()
        return [line] if line else []


class SerialStageHints:
    """Maps serial lines to coarse stage hints, each emitted at most once."""

    _RULES: Final[tuple[tuple[Stage, tuple[str, ...], str], ...]] = (
        (
            Stage.UPDATES,
            (
                "synchronizing package databases",
                "retrieving packages",
                "looking for conflicting packages",
                "upgrading",
                "installing",
                "downloading",
            ),
            "Applying package updates inside VM...",
        ),
        (
            Stage.ENV,
            ("repository setup", "web ui build step", "npm ", "vite v", "env check"),
            "Preparing repository and runtime env inside VM...",
        ),
        (
            Stage.DOCKER,
            ("starting workspace docker stack",),
            "Starting container stack inside VM...",
        ),
    )

    def __init__(self) -> None:
        self._sent: set[Stage] = set()

    def inspect(self, line: str) -> list[tuple[Stage, str]]:
        lowered = line.lower()
        hints: list[tuple[Stage, str]] = []
        for stage, markers, message in self._RULES:
            if stage in self._sent or not any(marker in lowered for marker in markers):
                continue
            if stage == Stage.DOCKER and Stage.ENV not in self._sent:
                # The stack banner implies env preparation already happened.
                self._sent.add(Stage.ENV)
                hints.append((Stage.ENV, self._RULES[1][2]))
            self._sent.add(stage)
            hints.append((stage, message))
        return hints


class SerialDiagnosticsReader:
    """Long-lived capture task for one VM's serial TCP port."""

    def __init__(
        self,
        host: str = constants.LOOPBACK_HOST,
        *,
        connect_timeout: float = 5.0,
        idle_poll_seconds: float = 0.5,
    ) -> None:
        self._host = host
        self._connect_timeout = connect_timeout
        self._idle_poll_seconds = idle_poll_seconds

    async def capture(self, port: int, reporter: StartupProgressReporter, token: CancelToken) -> None:
        """Read the serial stream until it closes, fails or `token` is cancelled.

        Never raises for I/O problems or cancellation; termination is
        reported as a log line.
        """
        prefix = constants.SERIAL_LINE_PREFIX
        try:
            reader, writer = await token.run(
                asyncio.open_connection(self._host, port),
                timeout=self._connect_timeout,
            )
        except StartCancelledError:
            reporter.log(f"{prefix}diagnostics capture cancelled.")
            return
        except (OSError, TimeoutError) as e:
            reporter.log(f"{prefix}diagnostics capture stopped: {str(e) or type(e).__name__}")
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        segmenter = SerialLineSegmenter()
        hints = SerialStageHints()
        logger.debug("Serial capture attached", extra={"port": port})
        try:
            while True:
                try:
                    chunk = await token.run(reader.read(constants.SERIAL_READ_CHUNK), timeout=self._idle_poll_seconds)
                except TimeoutError:
                    chunk = None
                if chunk == b"":
                    self._forward(segmenter.flush(), reporter, hints)
                    reporter.log(_DIAGNOSTICS_CLOSED)
                    break
                lines = segmenter.feed(decoder.decode(chunk)) if chunk else segmenter.poll()
                self._forward(lines, reporter, hints)
        except StartCancelledError:
            reporter.log(f"{prefix}diagnostics capture cancelled.")
        except OSError as e:
            reporter.log(f"{prefix}diagnostics capture stopped: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass  # QEMU may already have closed the chardev

    @staticmethod
    def _forward(lines: list[str], reporter: StartupProgressReporter, hints: SerialStageHints) -> None:
        for raw in lines:
            line = normalize_serial_line(raw)
            if line is None:
                continue
            reporter.log(f"{constants.SERIAL_LINE_PREFIX}{line}")
            for stage, message in hints.inspect(line):
                reporter.stage(stage, StageState.IN_PROGRESS, message)
