"""Cancellable one-shot timers with an explicit pending/fired/cancelled state."""

import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from ..logging_config import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


class TimerState(str, Enum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class ScheduledTask:
    """Runs `callback` once after `delay` seconds unless cancelled first.

    State only moves forward: pending -> fired or pending -> cancelled.
    `cancel()` reports whether it performed the transition, so callers can
    assert a timer was revoked exactly once.
    """

    def __init__(self, delay: float, callback: TimerCallback, *, name: str = "timer"):
        self.delay = max(0.0, float(delay))
        self.name = name
        self._callback = callback
        self._state = TimerState.PENDING
        self._task: Optional[asyncio.Task] = asyncio.get_running_loop().create_task(self._run(), name=name)

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def pending(self) -> bool:
        return self._state is TimerState.PENDING

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        if self._state is not TimerState.PENDING:
            return
        self._state = TimerState.FIRED
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error("Timer callback failed", timer=self.name, exc_info=True)

    def cancel(self) -> bool:
        if self._state is not TimerState.PENDING:
            return False
        self._state = TimerState.CANCELLED
        if self._task and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> None:
        """Wait for the underlying task to finish (fired callback included)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if self._state is not TimerState.CANCELLED:
                raise
