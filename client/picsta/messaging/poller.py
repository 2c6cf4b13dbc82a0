"""Fallback reconciliation poll.

Push events can be missed (dropped transport, events emitted while
reconnecting). A background task periodically re-fetches authoritative
state so local counters and lists converge even without the socket.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

PollCallback = Callable[[], Awaitable[Any]]


class ReconciliationPoller:
    """Runs callbacks every ``interval`` seconds until stopped.

    A failing callback is logged; the loop and the other callbacks keep
    running.

    Args:
        interval: Seconds between rounds.
        callbacks: Coroutines run in order each round.
        sleep: Awaitable sleep (tests pass a controllable one).
    """

    def __init__(
        self,
        interval: float,
        callbacks: Optional[List[PollCallback]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.interval = interval
        self._callbacks: List[PollCallback] = list(callbacks or [])
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.rounds = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add(self, callback: PollCallback) -> None:
        self._callbacks.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("[Poller] started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[Poller] stopped after %d round(s)", self.rounds)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            await self.run_once()

    async def run_once(self) -> int:
        """Run every callback once. Returns the number that failed."""
        failures = 0
        for callback in list(self._callbacks):
            try:
                await callback()
            except Exception:
                failures += 1
                logger.exception("[Poller] reconciliation callback failed")
        self.rounds += 1
        return failures
