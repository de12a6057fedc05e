"""
Pytest fixtures and configuration for tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from automation_engine.collaborators.base import (
    EmailSender,
    ExternalServiceError,
    FailureNotifier,
    SubscriberProvider,
    TagStore,
)
from automation_engine.config import Environment, Settings
from automation_engine.core.models import (
    DomainEvent,
    SubscriberSnapshot,
    TriggerKind,
    TriggerSpec,
    Workflow,
    WorkflowExecution,
    WorkflowGraph,
)
from automation_engine.core.state_machine import WorkflowStatus
from automation_engine.engine.executor import ExecutionEngine
from automation_engine.engine.matcher import TriggerMatcher
from automation_engine.engine.scheduler import ResumptionScheduler
from automation_engine.engine.service import AutomationService
from automation_engine.storage.memory import InMemoryStore
from automation_engine.template.variables import VariableRenderer

PUBLICATION_ID = "pub_1"
SUBSCRIBER_ID = "sub_1"


# ==================== Fakes ====================

class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmailSender(EmailSender):
    """Records sends; raises queued errors first."""

    def __init__(self):
        self.sent: list[dict[str, str]] = []
        self.calls = 0
        self.failures: list[Exception] = []

    async def send(self, to: str, subject: str, html: str, idempotency_key: str) -> None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "idempotency_key": idempotency_key,
        })


class FakePlatform(SubscriberProvider, TagStore):
    """Subscribers and tags kept in memory; tag mutations show up in later lookups."""

    def __init__(self):
        self.subscribers: dict[str, SubscriberSnapshot] = {}
        self.publications: dict[str, dict[str, Any]] = {}
        self.tag_calls: list[tuple[str, str, str]] = []
        self.lookup_failures: list[Exception] = []
        self.tag_failures: list[Exception] = []

    def add_subscriber(self, snapshot: SubscriberSnapshot) -> SubscriberSnapshot:
        self.subscribers[snapshot.id] = snapshot
        return snapshot

    async def get_subscriber(self, publication_id: str, subscriber_id: str) -> SubscriberSnapshot:
        if self.lookup_failures:
            raise self.lookup_failures.pop(0)
        snapshot = self.subscribers.get(subscriber_id)
        if snapshot is None:
            raise ExternalServiceError(
                f"Subscriber {subscriber_id} not found",
                service="platform",
                retryable=False,
                status_code=404,
            )
        return snapshot.model_copy(deep=True)

    async def get_publication(self, publication_id: str) -> dict[str, Any]:
        return dict(self.publications.get(publication_id, {"id": publication_id}))

    async def add_tag(self, subscriber_id: str, tag: str) -> None:
        self._maybe_fail()
        self.tag_calls.append(("add", subscriber_id, tag))
        snapshot = self.subscribers.get(subscriber_id)
        if snapshot is not None and tag not in snapshot.tags:
            snapshot.tags.append(tag)

    async def remove_tag(self, subscriber_id: str, tag: str) -> None:
        self._maybe_fail()
        self.tag_calls.append(("remove", subscriber_id, tag))
        snapshot = self.subscribers.get(subscriber_id)
        if snapshot is not None and tag in snapshot.tags:
            snapshot.tags.remove(tag)

    def _maybe_fail(self) -> None:
        if self.tag_failures:
            raise self.tag_failures.pop(0)


class FakeNotifier(FailureNotifier):
    def __init__(self):
        self.notified: list[tuple[Workflow, WorkflowExecution]] = []

    async def notify_failure(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        self.notified.append((workflow, execution))


# ==================== Components ====================

@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
        store_backend="memory",
        event_transport="inline",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def platform() -> FakePlatform:
    platform = FakePlatform()
    platform.publications[PUBLICATION_ID] = {
        "id": PUBLICATION_ID,
        "name": "The Weekly Dispatch",
        "url": "https://dispatch.example.com",
    }
    platform.add_subscriber(SubscriberSnapshot(
        id=SUBSCRIBER_ID,
        email="jane@example.com",
        name="Jane Smith",
        tier="free",
        tags=["reader"],
        fields={"age": "34", "city": "Lisbon"},
    ))
    return platform


@pytest.fixture
def renderer(clock: FakeClock) -> VariableRenderer:
    return VariableRenderer(clock=clock)


@pytest.fixture
def engine(store, email_sender, platform, notifier, renderer, clock) -> ExecutionEngine:
    return ExecutionEngine(
        store=store,
        email_sender=email_sender,
        tag_store=platform,
        subscribers=platform,
        notifier=notifier,
        renderer=renderer,
        clock=clock,
        max_conflict_retries=3,
        claim_timeout=300.0,
        worker_id="test-worker",
    )


@pytest.fixture
def matcher(store, platform, clock) -> TriggerMatcher:
    return TriggerMatcher(store, platform, clock=clock)


@pytest.fixture
def scheduler(store, engine, clock) -> ResumptionScheduler:
    return ResumptionScheduler(
        store=store,
        engine=engine,
        clock=clock,
        interval=0.01,
        batch_size=2,
        concurrency=2,
        stall_timeout=300.0,
    )


@pytest.fixture
def service(store, engine, matcher, email_sender, renderer, clock) -> AutomationService:
    return AutomationService(
        store=store,
        engine=engine,
        matcher=matcher,
        email_sender=email_sender,
        renderer=renderer,
        clock=clock,
    )


# ==================== Sample Data ====================

@pytest.fixture
def subscribe_trigger() -> TriggerSpec:
    return TriggerSpec(kind=TriggerKind.SUBSCRIBE)


@pytest.fixture
def welcome_graph() -> WorkflowGraph:
    """trigger -> welcome email -> wait 2 days -> tag 'onboarded'."""
    return WorkflowGraph.model_validate({
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {
                "id": "welcome",
                "type": "send_email",
                "subject": "Welcome {{subscriber.firstName}}",
                "content": "<p>Thanks for joining {{ publicationName }}.</p>",
            },
            {"id": "wait", "type": "wait", "delay": 2, "unit": "days"},
            {"id": "tag", "type": "add_tag", "tags": ["onboarded"]},
        ],
        "edges": [
            {"id": "e1", "source": "trigger", "target": "welcome"},
            {"id": "e2", "source": "welcome", "target": "wait"},
            {"id": "e3", "source": "wait", "target": "tag"},
        ],
    })


@pytest.fixture
def branching_graph() -> WorkflowGraph:
    """trigger -> has_tag(vip) -> true: vip email / false: tag 'needs-upgrade'."""
    return WorkflowGraph.model_validate({
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {"id": "is_vip", "type": "has_tag", "tag": "vip"},
            {
                "id": "vip_email",
                "type": "send_email",
                "subject": "A gift for you, {{subscriberFirstName}}",
                "content": "<p>VIP content</p>",
            },
            {"id": "upsell", "type": "add_tag", "tags": ["needs-upgrade"]},
        ],
        "edges": [
            {"id": "e1", "source": "trigger", "target": "is_vip"},
            {"id": "e2", "source": "is_vip", "target": "vip_email", "branch": True},
            {"id": "e3", "source": "is_vip", "target": "upsell", "branch": "false"},
        ],
    })


@pytest.fixture
def make_event() -> Callable[..., DomainEvent]:
    """Build a domain event with sensible defaults."""
    counter = {"n": 0}

    def factory(
        kind: TriggerKind = TriggerKind.SUBSCRIBE,
        event_id: Optional[str] = None,
        subscriber_id: str = SUBSCRIBER_ID,
        publication_id: str = PUBLICATION_ID,
        **fields: Any,
    ) -> DomainEvent:
        counter["n"] += 1
        return DomainEvent(
            event_id=event_id or f"evt_{counter['n']}",
            kind=kind,
            publication_id=publication_id,
            subscriber_id=subscriber_id,
            occurred_at=fields.pop("occurred_at", datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)),
            **fields,
        )

    return factory


@pytest.fixture
def create_active_workflow(service, subscribe_trigger):
    """Create and activate a workflow through the service."""

    async def factory(
        graph: WorkflowGraph,
        trigger: Optional[TriggerSpec] = None,
        name: str = "Test automation",
        **kwargs: Any,
    ) -> Workflow:
        workflow = await service.create_workflow(
            publication_id=PUBLICATION_ID,
            name=name,
            trigger=trigger or subscribe_trigger,
            graph=graph,
            **kwargs,
        )
        return await service.set_status(workflow.id, WorkflowStatus.ACTIVE)

    return factory
