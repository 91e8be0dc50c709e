"""Bounded polling with an injectable clock."""

import time
from dataclasses import dataclass
from typing import Callable, Protocol

from kata_manager.logging_config import get_logger

logger = get_logger(__name__)


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


@dataclass(frozen=True)
class PollResult:
    """Outcome of a bounded poll."""

    succeeded: bool
    elapsed: float
    attempts: int

    @property
    def timed_out(self) -> bool:
        return not self.succeeded


def poll_until(
    check: Callable[[float], bool],
    *,
    timeout: float,
    interval: float,
    clock: Clock | None = None,
) -> PollResult:
    """Call ``check`` every ``interval`` seconds until it returns True or time runs out.

    ``check`` receives the seconds elapsed so far, which callers use for progress
    output. Exceptions raised by ``check`` are not caught; that is how a caller
    signals a condition that will never resolve (e.g. a crash-looping pod).

    Args:
        check: Predicate evaluated once per attempt
        timeout: Seconds before giving up; zero or less never evaluates ``check``
        interval: Seconds to sleep between attempts
        clock: Time source, defaults to the system clock

    Returns:
        PollResult describing success or timeout
    """
    clock = clock or SystemClock()
    start = clock.monotonic()
    attempts = 0

    while True:
        elapsed = clock.monotonic() - start
        if elapsed >= timeout:
            logger.debug(f"Poll timed out after {elapsed:.0f}s ({attempts} attempts)")
            return PollResult(succeeded=False, elapsed=elapsed, attempts=attempts)

        attempts += 1
        if check(elapsed):
            return PollResult(succeeded=True, elapsed=elapsed, attempts=attempts)

        clock.sleep(min(interval, max(timeout - elapsed, 0)))
