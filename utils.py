import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# External process helpers
# ---------------------------------------------------------------------------

@dataclass
class CommandResult:
    """Outcome of an external command run to completion."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(*argv: str) -> CommandResult:
    """Run ``argv`` without a shell and capture decoded stdout/stderr.

    Raises ``OSError`` (e.g. ``FileNotFoundError``) when the executable
    cannot be started; a non-zero exit is reported through the result.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


# ---------------------------------------------------------------------------
# Latency logging
# ---------------------------------------------------------------------------

def _log_latency(logger: logging.Logger, service: str, operation: str, start: float) -> float:
    elapsed_ms = (time.monotonic() - start) * 1000
    logger.debug("%s.%s latency=%.1fms", service, operation, elapsed_ms)
    return elapsed_ms


class LatencyTracker:
    """``async with`` block that logs its wall-clock time at DEBUG.

    Errors raised inside the block still propagate; the time is logged
    either way and kept on ``elapsed_ms``.
    """

    __slots__ = ("service", "operation", "elapsed_ms", "_start", "_logger")

    def __init__(self, service: str, operation: str, *, logger: logging.Logger | None = None):
        self.service = service
        self.operation = operation
        self.elapsed_ms = 0.0
        self._start = 0.0
        self._logger = logger or logging.getLogger(f"latency.{service}")

    async def __aenter__(self) -> "LatencyTracker":
        self._start = time.monotonic()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.elapsed_ms = _log_latency(self._logger, self.service, self.operation, self._start)


def track_latency(service: str, operation: str | None = None):
    """Decorate a coroutine function so each call logs to ``latency.<service>``."""

    def decorator(fn: Any) -> Any:
        op = operation or fn.__name__
        logger = logging.getLogger(f"latency.{service}")

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                return await fn(*args, **kwargs)
            finally:
                _log_latency(logger, service, op, start)

        return wrapper

    return decorator
