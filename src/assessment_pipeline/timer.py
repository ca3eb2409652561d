"""Cancellable single-fire countdown for a round.

``RoundTimer`` samples a monotonic clock at a fixed tick (at most one
second) and derives the remaining time by subtracting the clock from the
deadline, so a slow or paused event loop never makes the countdown drift.
Exactly one of two things happens per arm cycle: the expiry callback
fires once, or the timer is cancelled before expiry and nothing fires.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    ExpiryCallback = Callable[[], Awaitable[Any] | Any]

logger = logging.getLogger(__name__)


class RoundTimer:
    """Single-fire countdown bound to the running event loop.

    Attributes:
        tick_seconds: Interval between clock samples.
    """

    def __init__(
        self,
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an unarmed timer.

        Args:
            tick_seconds: Interval between clock samples (0 < tick <= 1).
            clock: Monotonic clock returning seconds as a float.

        Raises:
            ValueError: If *tick_seconds* is outside ``(0, 1]``.
        """
        if not 0.0 < tick_seconds <= 1.0:
            msg = f"tick_seconds must be within (0, 1], got {tick_seconds}"
            raise ValueError(msg)
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._deadline: float | None = None
        self._on_expire: ExpiryCallback | None = None
        self._task: asyncio.Task[None] | None = None
        self._fired = False
        self._cancelled = False

    @property
    def armed(self) -> bool:
        """Whether a countdown is running and has neither fired nor been cancelled."""
        return self._task is not None and not self._fired and not self._cancelled

    @property
    def fired(self) -> bool:
        """Whether the expiry callback has been invoked in this arm cycle."""
        return self._fired

    def start(self, duration_seconds: float, on_expire: ExpiryCallback) -> None:
        """Arm the countdown.

        Args:
            duration_seconds: Seconds until expiry; negative values expire at once.
            on_expire: Called once on expiry. May be a plain callable or return
                an awaitable, which is awaited inside the timer task.

        Raises:
            RuntimeError: If the timer is already armed.
        """
        if self.armed:
            msg = "Timer is already armed; cancel it before re-arming"
            raise RuntimeError(msg)
        self._deadline = self._clock() + max(0.0, float(duration_seconds))
        self._on_expire = on_expire
        self._fired = False
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> bool:
        """Disarm the countdown before it fires.

        Returns:
            True if an armed countdown was disarmed; False if the timer was
            never armed, already fired, or already cancelled.
        """
        if not self.armed or self._task is None:
            return False
        self._cancelled = True
        self._task.cancel()
        return True

    def remaining(self) -> int:
        """Return whole seconds left, clamped to zero.

        Partial seconds round up, so a running countdown reports ``0`` only
        once the deadline has actually passed. A cancelled or fired timer
        reports ``0``.
        """
        if self._deadline is None or self._fired or self._cancelled:
            return 0
        left = self._deadline - self._clock()
        if left <= 0:
            return 0
        return math.ceil(left)

    async def _run(self) -> None:
        """Sample the clock until the deadline passes, then fire once."""
        assert self._deadline is not None
        while True:
            left = self._deadline - self._clock()
            if left <= 0:
                break
            await asyncio.sleep(min(self.tick_seconds, left))
        if self._cancelled:
            return
        self._fired = True
        callback = self._on_expire
        if callback is None:
            return
        try:
            outcome = callback()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Round timer expiry callback raised")
            raise
