"""
Idle auto-lock timer.

While armed, a deadline sits ``timeout`` seconds ahead of the last tracked
activity. A periodic check compares the clock with the deadline and, on
expiry, disarms itself and calls ``on_expire("idle timeout")`` exactly once.
The periodic check runs as an asyncio task when a loop is running; without
one, the owner drives :meth:`IdleAutoLock.check` directly.
"""
import time
import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("dualkey.vault")

IDLE_REASON = "idle timeout"
MIN_IDLE_MINUTES = 1
DEFAULT_IDLE_MINUTES = 5
DEFAULT_TICK = 0.25
WARNING_SECONDS = 30


def clamp_minutes(minutes: Optional[float]) -> float:
    try:
        value = float(minutes) if minutes else DEFAULT_IDLE_MINUTES
    except (TypeError, ValueError):
        value = DEFAULT_IDLE_MINUTES
    return max(MIN_IDLE_MINUTES, value)


class IdleAutoLock:
    def __init__(
        self,
        on_expire: Callable[[str], None],
        timeout_minutes: float = DEFAULT_IDLE_MINUTES,
        tick: float = DEFAULT_TICK,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_expire = on_expire
        self._minutes = clamp_minutes(timeout_minutes)
        self._tick = tick
        self._clock = clock
        self._deadline: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def timeout(self) -> float:
        """Idle timeout in seconds."""
        return self._minutes * 60

    @property
    def minutes(self) -> float:
        return self._minutes

    @property
    def armed(self) -> bool:
        return self._deadline is not None

    def arm(self) -> None:
        self.disarm()
        self._deadline = self._clock() + self.timeout
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: ticks are driven by the caller
            return
        self._task = loop.create_task(self._run())

    def disarm(self) -> None:
        self._deadline = None
        task, self._task = self._task, None
        if task is None or task.done() or task.get_loop().is_closed():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def touch(self) -> None:
        """Move the deadline to now + timeout; no-op while disarmed."""
        if self.armed:
            self._deadline = self._clock() + self.timeout

    def set_timeout(self, minutes: float) -> None:
        self._minutes = clamp_minutes(minutes)
        self.touch()

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, or None while disarmed."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self) -> bool:
        """Fire the expiry if the deadline has passed.

        Returns:
            True if this call locked the session.
        """
        if self._deadline is None:
            return False
        if self._clock() < self._deadline:
            return False
        self.disarm()
        logger.info(
            "Idle auto-lock fired after %s minute(s) of inactivity",
            f"{self.minutes:g}",
        )
        self._on_expire(IDLE_REASON)
        return True

    async def _run(self) -> None:
        while self.armed:
            await asyncio.sleep(self._tick)
            if self.check():
                break
