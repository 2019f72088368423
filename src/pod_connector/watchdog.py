"""Liveness watchdog for open message transfers.

The Pod occasionally stops sending in the middle of a file, or loses the
last few fragments of one. The watchdog polls the time since the last
fragment and, when a transfer has stalled, asks the session to finish the
message with whatever has been received so far.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from .config import DEFAULT_TIMING, SessionTiming

logger = logging.getLogger(__name__)

TIMEOUT = "timeout"
STALLED = "stalled"


class ActivityClock:
    """Lock-guarded timestamp of the last inbound fragment.

    Shared between the notification path, which touches it, and the
    watchdog, which reads it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last = clock()

    def now(self) -> float:
        """Current reading of the underlying clock."""
        return self._clock()

    def touch(self) -> None:
        """Record that a fragment arrived now."""
        now = self._clock()
        with self._lock:
            self._last = now

    @property
    def last(self) -> float:
        """Clock reading of the last fragment."""
        with self._lock:
            return self._last

    def elapsed(self) -> float:
        """Seconds since the last fragment."""
        now = self._clock()
        with self._lock:
            return now - self._last


class LivenessWatchdog:
    """Background task that force-finishes stalled transfers.

    Args:
        activity: Clock touched on every inbound fragment.
        progress: Returns ``(received, expected)`` for the open message;
            ``expected == 0`` means no message is open.
        on_force: Called with the reason (``"timeout"`` or ``"stalled"``)
            when the open message must be finished. Called at most once
            per :meth:`start`.
        timing: Poll period and thresholds.
    """

    def __init__(
        self,
        activity: ActivityClock,
        progress: Callable[[], tuple[int, int]],
        on_force: Callable[[str], None],
        timing: SessionTiming = DEFAULT_TIMING,
    ) -> None:
        self._activity = activity
        self._progress = progress
        self._on_force = on_force
        self._timing = timing
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        """True while the polling task is alive."""
        return self._task is not None and not self._task.done()

    def check(self) -> Optional[str]:
        """Evaluate the forcing conditions once.

        Returns:
            ``"timeout"`` after the hard timeout, ``"stalled"`` when a
            nearly complete transfer has gone quiet, ``None`` otherwise.
        """
        received, expected = self._progress()
        if expected <= 0:
            return None

        elapsed = self._activity.elapsed()
        if elapsed > self._timing.hard_timeout:
            return TIMEOUT
        if elapsed > self._timing.stall_timeout:
            if received / expected > self._timing.stall_progress:
                return STALLED
        return None

    def start(self) -> None:
        """Start polling on the running event loop, replacing any previous task."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="pod-watchdog"
        )

    def cancel(self) -> None:
        """Request the task to stop without waiting, for synchronous callers.

        A cancelled task receives CancelledError at its next resumption, so
        it can no longer call ``on_force`` once this returns.
        """
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def stop(self) -> None:
        """Stop polling and wait until the task has actually ended."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Forced finish running inside the watchdog itself; the loop
            # returns right after on_force.
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        logger.debug("Watchdog started (poll=%.2fs)", self._timing.watchdog_poll)
        try:
            while True:
                await asyncio.sleep(self._timing.watchdog_poll)
                reason = self.check()
                if reason is None:
                    continue

                received, expected = self._progress()
                logger.warning(
                    "Watchdog: %s after %.1fs at %d/%d fragments, finishing message",
                    reason,
                    self._activity.elapsed(),
                    received,
                    expected,
                )
                self._on_force(reason)
                return
        finally:
            logger.debug("Watchdog stopped")
