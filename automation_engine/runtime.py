"""
Runtime wiring.

Builds the store, collaborators, engine, scheduler and service from
settings, and owns their connections. Used by both the API lifespan and
the worker process.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from automation_engine.collaborators import (
    EmailSender,
    FailureNotifier,
    LoggingFailureNotifier,
    PlatformClient,
    StreamFailureNotifier,
    SubscriberProvider,
    TagStore,
    build_email_sender,
)
from automation_engine.config import Settings, get_settings
from automation_engine.core.models import RetryConfig, utcnow
from automation_engine.engine.executor import ExecutionEngine
from automation_engine.engine.matcher import TriggerMatcher
from automation_engine.engine.scheduler import ResumptionScheduler
from automation_engine.engine.service import AutomationService
from automation_engine.messaging import EventStream, NotificationStream, RedisConnection
from automation_engine.storage import AutomationStore, InMemoryStore
from automation_engine.storage.postgres import Database, PostgresStore
from automation_engine.template import VariableRenderer

logger = logging.getLogger(__name__)


class AutomationRuntime:
    """
    Owns every long-lived component of the engine.

    Components passed to the constructor are used as-is (tests inject
    in-memory fakes); anything left out is built from settings in ``init()``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[AutomationStore] = None,
        email_sender: Optional[EmailSender] = None,
        subscribers: Optional[SubscriberProvider] = None,
        tag_store: Optional[TagStore] = None,
        notifier: Optional[FailureNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.email_sender = email_sender
        self.subscribers = subscribers
        self.tag_store = tag_store
        self.notifier = notifier
        self.clock = clock
        self.worker_id = worker_id

        self.database: Optional[Database] = None
        self.redis: Optional[RedisConnection] = None
        self.events: Optional[EventStream] = None
        self._platform: Optional[PlatformClient] = None

        self.matcher: Optional[TriggerMatcher] = None
        self.engine: Optional[ExecutionEngine] = None
        self.scheduler: Optional[ResumptionScheduler] = None
        self.service: Optional[AutomationService] = None

    @property
    def uses_redis(self) -> bool:
        return self.settings.event_transport == "redis"

    async def init(self) -> None:
        """Open connections and build the object graph."""
        settings = self.settings

        if self.store is None:
            self.store = await self._build_store()

        if self.uses_redis:
            self.redis = RedisConnection(settings)
            await self.redis.init()
            self.events = EventStream(self.redis.client, settings.redis.stream_max_length)
            await self.events.init()

        if self.subscribers is None or self.tag_store is None:
            self._platform = PlatformClient(
                base_url=settings.platform.base_url,
                api_key=settings.platform.api_key,
                timeout=settings.platform.timeout,
            )
            self.subscribers = self.subscribers or self._platform
            self.tag_store = self.tag_store or self._platform

        if self.email_sender is None:
            self.email_sender = build_email_sender(settings)

        if self.notifier is None:
            if self.redis is not None:
                stream = NotificationStream(self.redis.client, settings.redis.stream_max_length)
                self.notifier = StreamFailureNotifier(stream)
            else:
                self.notifier = LoggingFailureNotifier()

        renderer = VariableRenderer(clock=self.clock)
        retry_defaults = RetryConfig.from_settings(settings.retry)

        self.matcher = TriggerMatcher(self.store, self.subscribers, clock=self.clock)
        self.engine = ExecutionEngine(
            store=self.store,
            email_sender=self.email_sender,
            tag_store=self.tag_store,
            subscribers=self.subscribers,
            notifier=self.notifier,
            renderer=renderer,
            clock=self.clock,
            max_conflict_retries=settings.engine.max_conflict_retries,
            claim_timeout=settings.engine.claim_timeout,
            worker_id=self.worker_id,
        )
        self.scheduler = ResumptionScheduler(
            store=self.store,
            engine=self.engine,
            clock=self.clock,
            interval=settings.scheduler.interval,
            batch_size=settings.scheduler.batch_size,
            concurrency=settings.scheduler.concurrency,
            stall_timeout=settings.scheduler.stall_timeout,
        )
        self.service = AutomationService(
            store=self.store,
            engine=self.engine,
            matcher=self.matcher,
            email_sender=self.email_sender,
            renderer=renderer,
            retry_defaults=retry_defaults,
            max_conflict_retries=settings.engine.max_conflict_retries,
            clock=self.clock,
        )
        logger.info(
            f"Automation runtime ready (store={type(self.store).__name__}, "
            f"events={settings.event_transport})"
        )

    async def _build_store(self) -> AutomationStore:
        if self.settings.store_backend == "memory":
            logger.warning("Using the in-memory store; nothing survives a restart")
            return InMemoryStore()

        self.database = Database(self.settings)
        await self.database.init()
        return PostgresStore(self.database)

    async def close(self) -> None:
        """Stop the scheduler and release every connection."""
        if self.scheduler is not None:
            await self.scheduler.stop()

        for resource in (self.email_sender, self._platform):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()

        if self.store is not None:
            await self.store.close()

        if self.redis is not None:
            await self.redis.close()

        logger.info("Automation runtime closed")

    async def health(self) -> dict[str, str]:
        """Per-service health for the health endpoint."""
        services = {}

        if self.database is not None:
            try:
                ok = await self.database.health_check()
            except Exception as e:
                logger.warning(f"Postgres health check failed: {e}")
                ok = False
            services["postgres"] = "healthy" if ok else "unhealthy"
        else:
            services["store"] = "healthy" if self.store is not None else "unhealthy"

        if self.uses_redis:
            ok = self.redis is not None and await self.redis.health_check()
            services["redis"] = "healthy" if ok else "unhealthy"

        if self.scheduler is not None and self.scheduler.is_running:
            services["scheduler"] = "running"

        return services
