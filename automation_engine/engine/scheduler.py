"""
Resumption scheduler.

Periodically resumes executions whose wait or retry backoff has elapsed, and
re-drives RUNNING executions that a crashed worker left behind.

Uses a semaphore-bounded pool so one tick never runs more than
``concurrency`` executions at the same time.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from automation_engine.core.models import WorkflowExecution, utcnow
from automation_engine.engine.executor import ExecutionEngine
from automation_engine.storage.base import AutomationStore, Cursor

logger = logging.getLogger(__name__)


class ResumptionScheduler:
    """
    Polls the store for due executions.

    Suspension is pure data (``status=WAITING`` plus ``wake_at``), so a
    restart loses nothing: the next tick picks up whatever is due.
    """

    def __init__(
        self,
        store: AutomationStore,
        engine: ExecutionEngine,
        clock: Callable[[], datetime] = utcnow,
        interval: float = 60.0,
        batch_size: int = 100,
        concurrency: int = 10,
        stall_timeout: float = 300.0,
    ):
        self.store = store
        self.engine = engine
        self.clock = clock
        self.interval = interval
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.stall_timeout = timedelta(seconds=stall_timeout)

        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        Resume everything due at ``now``.

        Returns:
            Number of executions driven without error
        """
        now = now or self.clock()
        semaphore = asyncio.Semaphore(self.concurrency)

        resumed = await self._drain(
            lambda after: self.store.find_due_executions(now, self.batch_size, after),
            lambda execution: (execution.wake_at, execution.id),
            semaphore,
        )

        stalled = await self._drain(
            lambda after: self.store.find_stalled_executions(
                now - self.stall_timeout,
                self.batch_size,
                after,
            ),
            lambda execution: (execution.updated_at, execution.id),
            semaphore,
        )

        if resumed or stalled:
            logger.info(f"Scheduler tick resumed {resumed} waiting and {stalled} stalled executions")
        return resumed + stalled

    async def _drain(
        self,
        fetch: Callable[[Optional[Cursor]], Awaitable[list[WorkflowExecution]]],
        cursor_of: Callable[[WorkflowExecution], Cursor],
        semaphore: asyncio.Semaphore,
    ) -> int:
        """Page through a keyset-ordered query and drive every row."""
        driven = 0
        cursor: Optional[Cursor] = None

        while True:
            batch = await fetch(cursor)
            if not batch:
                break

            results = await asyncio.gather(
                *(self._drive(execution, semaphore) for execution in batch)
            )
            driven += sum(1 for ok in results if ok)

            if len(batch) < self.batch_size:
                break
            cursor = cursor_of(batch[-1])

        return driven

    async def _drive(self, execution: WorkflowExecution, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                await self.engine.run(execution.id)
                return True
            except Exception as e:
                # One broken execution must not stop the tick
                logger.error(f"Failed to resume execution {execution.id}: {e}", exc_info=True)
                return False

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start ticking every ``interval`` seconds."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler started (interval={self.interval}s, concurrency={self.concurrency})")

    async def stop(self) -> None:
        """Stop the tick loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

            await asyncio.sleep(self.interval)
