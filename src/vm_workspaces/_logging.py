"""Centralized logging for vm-workspaces.

Library logging rules:
- The library root logger only carries a NullHandler
- Handlers are the application's job; the CLI installs one via configure_logging()
- VM_WORKSPACES_LOG_LEVEL env var sets the library level at import time

CLI output format:
    WARNING [2026-02-25 10:02:54] vm_workspaces.orchestrator - message

Non-blocking logging:
    Startup flows log from many concurrent coroutines (serial capture, probes,
    warmup loops).  Records go through a bounded QueueHandler; a
    QueueListener daemon thread drains them to click.echo(err=True).  When the
    queue is full records are dropped instead of blocking the event loop.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vm_workspaces"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor VM_WORKSPACES_LOG_LEVEL env var (e.g. "DEBUG", "WARNING")
_env_level = os.environ.get("VM_WORKSPACES_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Serial capture of several workspaces can burst hundreds of lines per second.
_QUEUE_CAPACITY = 4096


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr via click.echo with dim styling."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # Stderr buffer full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller.

    Records are enqueued with put_nowait(); a QueueListener thread hands them
    to _ClickHandler.  A full queue drops the record.
    """

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Same-process queue, no pickling needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All vm_workspaces modules use this instead of logging.getLogger()
    so loggers stay under the library root.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for the CLI.

    Installs a _NonBlockingHandler once (idempotent), then sets the level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, only ERROR and above are shown. Wins over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
