"""Tests for serial console capture: line segmentation, cleanup, stage hints
and the capture loop against a loopback TCP server."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable

import pytest

from tests.fakes import RecordingSink, free_port
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.models import Stage, StageState
from vm_workspaces.progress import StartupProgressReporter
from vm_workspaces.serial_diagnostics import (
    SerialDiagnosticsReader,
    SerialLineSegmenter,
    SerialStageHints,
    normalize_serial_line,
    strip_terminal_escapes,
)

# ============================================================================
# Test Helpers
# ============================================================================


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
async def serial_server() -> AsyncGenerator[Callable[..., object], None]:
    """Factory for a one-shot serial console: writes `payload`, then closes
    (or holds the connection open until the client leaves)."""
    servers: list[asyncio.Server] = []

    async def start(payload: bytes, *, hold_open: bool = False) -> int:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.write(payload)
            await writer.drain()
            if hold_open:
                await reader.read()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        servers.append(server)
        return server.sockets[0].getsockname()[1]

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


# ============================================================================
# Segmenter
# ============================================================================


class TestSerialLineSegmenter:
    def test_splits_on_delimiter_runs(self) -> None:
        segmenter = SerialLineSegmenter(clock=FakeClock())
        assert segmenter.feed("boot\r\nkernel\n\n\rsys") == ["boot", "kernel"]
        assert segmenter.feed("temd\n") == ["systemd"]

    def test_flush_returns_partial(self) -> None:
        segmenter = SerialLineSegmenter(clock=FakeClock())
        segmenter.feed("login: ")
        assert segmenter.flush() == ["login: "]
        assert segmenter.flush() == []

    def test_stale_partial_flushed_by_poll(self) -> None:
        clock = FakeClock()
        segmenter = SerialLineSegmenter(partial_chars=4, partial_seconds=1.0, clock=clock)

        assert segmenter.feed("abcd") == []
        clock.now = 0.5
        assert segmenter.poll() == []
        clock.now = 1.5
        assert segmenter.poll() == ["abcd"]

    def test_short_partial_not_flushed(self) -> None:
        clock = FakeClock()
        segmenter = SerialLineSegmenter(partial_chars=10, partial_seconds=1.0, clock=clock)
        segmenter.feed("abc")
        clock.now = 60
        assert segmenter.poll() == []


# ============================================================================
# Normalization
# ============================================================================


class TestNormalizeSerialLine:
    def test_strips_escapes(self) -> None:
        assert strip_terminal_escapes("\x1b[1;32mOK\x1b[0m \x1b]0;title\x07done") == "OK done"
        assert normalize_serial_line("\x1b[2J\x1b[H[  OK  ] Reached target") == "[  OK  ] Reached target"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   \t",
            "\x1b[0m",
            "+q6b63",
            "[1b5b]",
            "Started Session 3 of User dev.",
            "Started session-4.scope - Session 4 of user dev.",
        ],
    )
    def test_noise_dropped(self, raw: str) -> None:
        assert normalize_serial_line(raw) is None

    def test_truncates_long_lines(self) -> None:
        line = normalize_serial_line("x" * 500)
        assert line == "x" * 360 + "..."


class TestSerialStageHints:
    def test_each_hint_once(self) -> None:
        hints = SerialStageHints()
        assert hints.inspect("Upgrading linux (6.1 -> 6.2)") == [(Stage.UPDATES, "Applying package updates inside VM...")]
        assert hints.inspect("installing python3") == []

    def test_unrelated_line(self) -> None:
        assert SerialStageHints().inspect("Reached target Multi-User System.") == []

    def test_stack_banner_implies_env(self) -> None:
        hints = SerialStageHints()
        assert [stage for stage, _ in hints.inspect("Starting workspace docker stack...")] == [Stage.ENV, Stage.DOCKER]
        assert hints.inspect("env check passed") == []


# ============================================================================
# Capture
# ============================================================================


class TestSerialDiagnosticsReader:
    async def test_forwards_lines_until_closed(self, serial_server: Callable[..., object], sink: RecordingSink) -> None:
        port = await serial_server(  # type: ignore[misc]
            b"Booting\r\n\x1b[2Jcloud-init: Installing curl\nStarting workspace docker stack\nlogin: "
        )

        await SerialDiagnosticsReader().capture(port, StartupProgressReporter(sink), CancelToken())

        assert sink.logs == [
            "[serial] Booting",
            "[serial] cloud-init: Installing curl",
            "[serial] Starting workspace docker stack",
            "[serial] login:",
            "[serial] stream closed by guest or QEMU.",
        ]
        assert [(u.stage, u.state) for u in sink.stages] == [
            (Stage.UPDATES, StageState.IN_PROGRESS),
            (Stage.ENV, StageState.IN_PROGRESS),
            (Stage.DOCKER, StageState.IN_PROGRESS),
        ]

    async def test_invalid_utf8_replaced(self, serial_server: Callable[..., object], sink: RecordingSink) -> None:
        port = await serial_server(b"caf\xc3\xa9 \xff ok\n")  # type: ignore[misc]

        await SerialDiagnosticsReader().capture(port, StartupProgressReporter(sink), CancelToken())

        assert sink.logs[0] == "[serial] café � ok"

    async def test_cancel_stops_capture(self, serial_server: Callable[..., object], sink: RecordingSink) -> None:
        port = await serial_server(b"Booting\n", hold_open=True)  # type: ignore[misc]
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.1, token.cancel)

        await SerialDiagnosticsReader(idle_poll_seconds=0.02).capture(port, StartupProgressReporter(sink), token)

        assert sink.logs[0] == "[serial] Booting"
        assert sink.logs[-1] == "[serial] diagnostics capture cancelled."

    async def test_connect_failure_reported(self, sink: RecordingSink) -> None:
        await SerialDiagnosticsReader(connect_timeout=0.5).capture(
            free_port(), StartupProgressReporter(sink), CancelToken()
        )

        assert len(sink.logs) == 1
        assert sink.logs[0].startswith("[serial] diagnostics capture stopped: ")

    async def test_cancelled_before_connect(self, sink: RecordingSink) -> None:
        token = CancelToken()
        token.cancel()

        await SerialDiagnosticsReader().capture(free_port(), StartupProgressReporter(sink), token)

        assert sink.logs == ["[serial] diagnostics capture cancelled."]
