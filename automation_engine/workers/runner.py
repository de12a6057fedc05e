"""
Automation worker process.

Consumes domain events from Redis Streams, starts matching executions and
drives them until they wait or finish. Optionally runs the resumption
scheduler in the same process.

Delivery is at-least-once:
- An event is acknowledged only after matching and the first run succeed
- Events left pending by a dead worker are claimed after ``stale_event_idle``
- Replayed events create no new executions (unique per workflow and event)
"""

import asyncio
import logging
import signal
import uuid
from typing import Optional

import redis.asyncio as redis

from automation_engine.collaborators import ExternalServiceError
from automation_engine.config import Settings, get_settings
from automation_engine.core.models import DomainEvent
from automation_engine.messaging import EventStream
from automation_engine.runtime import AutomationRuntime
from automation_engine.storage import StoreError

logger = logging.getLogger(__name__)


class AutomationWorker:
    """
    Event consumer plus optional scheduler.

    Any number of workers can run against the same stream and database.
    """

    def __init__(
        self,
        runtime: Optional[AutomationRuntime] = None,
        worker_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self.worker_id = worker_id or f"automation-worker-{uuid.uuid4().hex[:8]}"
        self.settings = settings or (runtime.settings if runtime else get_settings())
        self.runtime = runtime or AutomationRuntime(self.settings, worker_id=self.worker_id)

        self._running = False
        self._owns_runtime = runtime is None
        self._tasks: list[asyncio.Task] = []

    @property
    def events(self) -> EventStream:
        if self.runtime.events is None:
            raise RuntimeError("Automation worker requires the redis event transport")
        return self.runtime.events

    async def start(self) -> None:
        """Start consuming events."""
        if self._running:
            return

        logger.info(f"Starting automation worker {self.worker_id}")
        if self.runtime.service is None:
            await self.runtime.init()

        # Fail fast when the transport is not redis
        _ = self.events

        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume_loop()),
            asyncio.create_task(self._claim_loop()),
        ]

        if self.settings.worker.run_scheduler:
            await self.runtime.scheduler.start()

        logger.info(f"Automation worker {self.worker_id} started")

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self._running:
            return

        logger.info(f"Stopping automation worker {self.worker_id}")
        self._running = False

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self.runtime.scheduler is not None:
            await self.runtime.scheduler.stop()

        if self._owns_runtime:
            await self.runtime.close()

        logger.info(f"Automation worker {self.worker_id} stopped")

    async def run(self) -> None:
        """Run the worker until stopped."""
        await self.start()
        self._setup_signal_handlers()

        try:
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    # ==================== Event Processing ====================

    async def process(self, message_id: str, event: DomainEvent) -> bool:
        """
        Handle one event.

        Returns:
            True if the message was acknowledged
        """
        try:
            executions = await self.runtime.service.process_event(event)
        except ExternalServiceError as e:
            if e.retryable:
                # Left pending; claimed again once it goes stale
                logger.warning(f"Event {event.event_id} hit a transient error, will retry: {e}")
                return False
            await self.events.reject(message_id, {"payload": event.model_dump_json()}, str(e))
            logger.error(f"Event {event.event_id} dead-lettered: {e}")
            return True
        except StoreError as e:
            logger.warning(f"Event {event.event_id} could not be stored, will retry: {e}")
            return False

        await self.events.acknowledge(message_id)
        logger.info(
            f"Event {event.event_id} ({event.kind.value}) processed: "
            f"{len(executions)} executions started"
        )
        return True

    async def _consume_loop(self) -> None:
        block_ms = self.settings.redis.stream_block_ms
        count = self.settings.worker.event_batch_size

        while self._running:
            try:
                messages = await self.events.consume(self.worker_id, count, block_ms)
                for message_id, event in messages:
                    await self.process(message_id, event)
            except asyncio.CancelledError:
                logger.debug("Event consume loop cancelled")
                break
            except redis.TimeoutError as e:
                logger.debug(f"Redis timeout while consuming events, retrying: {e}")
                continue
            except redis.ConnectionError as e:
                logger.warning(f"Redis connection error while consuming events: {e}")
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Error in event consume loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _claim_loop(self) -> None:
        """Take over events a dead consumer never acknowledged."""
        interval = self.settings.worker.stale_claim_interval
        min_idle_ms = int(self.settings.worker.stale_event_idle * 1000)

        while self._running:
            try:
                await asyncio.sleep(interval)
                claimed = await self.events.claim_stale(
                    self.worker_id,
                    min_idle_ms=min_idle_ms,
                    count=self.settings.worker.event_batch_size,
                )
                if claimed:
                    logger.info(f"Claimed {len(claimed)} stale events")
                for message_id, event in claimed:
                    await self.process(message_id, event)
            except asyncio.CancelledError:
                break
            except redis.RedisError as e:
                logger.warning(f"Stale event claim failed: {e}")
            except Exception as e:
                logger.error(f"Error in stale claim loop: {e}", exc_info=True)

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler, sig)

    def _signal_handler(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, shutting down...")
        self._running = False


async def run_worker() -> None:
    """Entry point for running an automation worker."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    worker = AutomationWorker(settings=settings)

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    finally:
        await worker.stop()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
