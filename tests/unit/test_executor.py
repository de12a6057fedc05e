"""
Unit tests for the execution engine.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from automation_engine.collaborators.base import ExternalServiceError
from automation_engine.core.models import DISPATCH_KEY, RETRY_KEY, RetryConfig, WorkflowGraph
from automation_engine.core.state_machine import (
    ExecutionStatus,
    InvalidStateTransitionError,
    WorkflowStatus,
)
from automation_engine.engine.executor import ExecutionEngine, idempotency_key
from automation_engine.engine.matcher import TriggerMatcher
from automation_engine.engine.service import AutomationService
from automation_engine.storage.base import ConcurrencyConflictError, ExecutionNotFoundError
from automation_engine.storage.memory import InMemoryStore


async def start(matcher, make_event, **event_fields):
    executions = await matcher.handle_event(make_event(**event_fields))
    assert len(executions) == 1
    return executions[0]


class TestHappyPath:
    """Tests for a straight-line workflow."""

    @pytest.mark.asyncio
    async def test_runs_until_wait(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, email_sender, clock
    ):
        """Test the execution sends the email and suspends at the wait node."""
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.WAITING
        assert result.current_node_id == "wait"
        assert result.wake_at == clock.now + timedelta(days=2)
        assert email_sender.sent == [{
            "to": "jane@example.com",
            "subject": "Welcome Jane",
            "html": "<p>Thanks for joining The Weekly Dispatch.</p>",
            "idempotency_key": f"{execution.id}:welcome:1",
        }]
        assert DISPATCH_KEY not in result.context

    @pytest.mark.asyncio
    async def test_resumes_after_wait_and_completes(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, platform, store, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)

        clock.advance(days=2)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.completed_at == clock.now
        assert platform.tag_calls == [("add", "sub_1", "onboarded")]

        transitions = await store.list_transitions(execution.id)
        assert [t.to_state for t in transitions] == [
            "RUNNING", "RUNNING", "RUNNING", "WAITING", "RUNNING", "RUNNING", "COMPLETED",
        ]
        assert result.version == 7

    @pytest.mark.asyncio
    async def test_wait_not_elapsed_is_a_no_op(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        waiting = await engine.run(execution.id)

        clock.advance(days=1, hours=23)
        outcome = await engine.step(execution.id)

        assert outcome.progressed is False
        assert outcome.execution.version == waiting.version

    @pytest.mark.asyncio
    async def test_wait_as_last_node_completes_on_wake(
        self, engine, matcher, make_event, create_active_workflow, clock
    ):
        graph = WorkflowGraph.model_validate({
            "nodes": [
                {"id": "trigger", "type": "trigger"},
                {"id": "pause", "type": "wait", "delay": 1, "unit": "hours"},
            ],
            "edges": [{"id": "e1", "source": "trigger", "target": "pause"}],
        })
        await create_active_workflow(graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)

        clock.advance(hours=1)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_execution_does_not_progress(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)
        clock.advance(days=2)
        done = await engine.run(execution.id)

        outcome = await engine.step(execution.id)

        assert outcome.progressed is False
        assert outcome.execution.version == done.version

    @pytest.mark.asyncio
    async def test_unknown_execution(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            await engine.step(uuid4())


class TestConditions:
    """Tests for branch selection."""

    @pytest.mark.asyncio
    async def test_false_branch(
        self, engine, matcher, make_event, create_active_workflow, branching_graph, platform, email_sender
    ):
        await create_active_workflow(branching_graph)
        execution = await start(matcher, make_event)

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert platform.tag_calls == [("add", "sub_1", "needs-upgrade")]
        assert email_sender.sent == []

    @pytest.mark.asyncio
    async def test_true_branch_uses_fresh_subscriber_data(
        self, engine, matcher, make_event, create_active_workflow, branching_graph, platform, email_sender
    ):
        """Test the tag added after the event started is seen by the condition."""
        await create_active_workflow(branching_graph)
        execution = await start(matcher, make_event)
        platform.subscribers["sub_1"].tags.append("vip")

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert [m["subject"] for m in email_sender.sent] == ["A gift for you, Jane"]
        assert "vip" in result.context["subscriber"]["tags"]

    @pytest.mark.asyncio
    async def test_lookup_failure_backs_off(
        self, engine, matcher, make_event, create_active_workflow, branching_graph, platform, clock
    ):
        await create_active_workflow(branching_graph)
        execution = await start(matcher, make_event)
        platform.lookup_failures.append(
            ExternalServiceError("platform unavailable", service="platform", retryable=True, status_code=503)
        )

        waiting = await engine.run(execution.id)

        assert waiting.status == ExecutionStatus.WAITING
        assert waiting.current_node_id == "is_vip"
        assert waiting.retry_state["attempts"] == 1

        clock.advance(seconds=30)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
        assert RETRY_KEY not in result.context


class TestRetries:
    """Tests for effect failures and backoff."""

    @pytest.mark.asyncio
    async def test_retryable_failure_schedules_backoff(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, email_sender, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        email_sender.failures.append(
            ExternalServiceError("rate limited", service="email", retryable=True, status_code=429)
        )

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.WAITING
        assert result.current_node_id == "welcome"
        assert result.wake_at == clock.now + timedelta(seconds=30)
        assert result.last_error == "rate limited"
        assert result.retry_state == {"node_id": "welcome", "attempts": 1, "last_error": "rate limited"}
        assert email_sender.sent == []

    @pytest.mark.asyncio
    async def test_retry_uses_next_attempt_key(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, email_sender, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        email_sender.failures.append(ExternalServiceError("timeout", service="email"))
        await engine.run(execution.id)

        clock.advance(seconds=30)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.WAITING
        assert result.current_node_id == "wait"
        assert result.last_error is None
        assert RETRY_KEY not in result.context
        assert [m["idempotency_key"] for m in email_sender.sent] == [
            idempotency_key(execution.id, "welcome", 2),
        ]

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_and_notifies(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, email_sender, notifier, clock
    ):
        workflow = await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        email_sender.failures.append(
            ExternalServiceError("invalid recipient", service="email", retryable=False, status_code=422)
        )

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.FAILED
        assert result.last_error == "invalid recipient"
        assert result.completed_at == clock.now
        assert len(notifier.notified) == 1
        assert notifier.notified[0][0].id == workflow.id
        assert notifier.notified[0][1].id == execution.id

    @pytest.mark.asyncio
    async def test_attempts_exhausted(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, email_sender, notifier, clock
    ):
        await create_active_workflow(welcome_graph, retry=RetryConfig(base_delay=10, max_attempts=2))
        execution = await start(matcher, make_event)
        email_sender.failures.extend([
            ExternalServiceError("server error", service="email", status_code=500),
            ExternalServiceError("server error", service="email", status_code=500),
        ])

        await engine.run(execution.id)
        clock.advance(seconds=10)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.FAILED
        assert email_sender.calls == 2
        assert result.retry_state["attempts"] == 2
        assert len(notifier.notified) == 1

    @pytest.mark.asyncio
    async def test_subscriber_without_email_fails(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, platform, email_sender
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        platform.subscribers["sub_1"].email = None

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.FAILED
        assert "no email address" in result.last_error
        assert email_sender.calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_tag_error_is_retryable(
        self, engine, matcher, make_event, create_active_workflow, branching_graph, platform
    ):
        await create_active_workflow(branching_graph)
        execution = await start(matcher, make_event)
        platform.tag_failures.append(RuntimeError("socket closed"))

        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.WAITING
        assert result.current_node_id == "upsell"
        assert "socket closed" in result.last_error


class TestClaims:
    """Tests for the claim written before an effect runs."""

    async def claim_elsewhere(self, store, execution_id, clock, attempt=1):
        execution = await store.get_execution(execution_id)
        execution.context[DISPATCH_KEY] = {
            "node_id": execution.current_node_id,
            "attempt": attempt,
            "idempotency_key": idempotency_key(execution.id, execution.current_node_id, attempt),
            "claimed_at": clock().isoformat(),
            "worker_id": "other-worker",
            "token": "other-token",
        }
        return await store.save_execution(execution, execution.version)

    @pytest.mark.asyncio
    async def test_fresh_claim_is_left_alone(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, store, email_sender, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.step(execution.id)
        await self.claim_elsewhere(store, execution.id, clock)

        clock.advance(seconds=60)
        outcome = await engine.step(execution.id)

        assert outcome.progressed is False
        assert email_sender.calls == 0

    @pytest.mark.asyncio
    async def test_stale_claim_is_reclaimed_with_same_key(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, store, email_sender, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.step(execution.id)
        await self.claim_elsewhere(store, execution.id, clock)

        clock.advance(seconds=301)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.WAITING
        assert [m["idempotency_key"] for m in email_sender.sent] == [f"{execution.id}:welcome:1"]

    @pytest.mark.asyncio
    async def test_claim_is_persisted_before_the_effect(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, store, email_sender
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.step(execution.id)
        seen = {}

        original_send = email_sender.send

        async def send(to, subject, html, idempotency_key):
            stored = await store.get_execution(execution.id)
            seen.update(stored.dispatch_claim)
            await original_send(to, subject, html, idempotency_key)

        email_sender.send = send
        await engine.step(execution.id)

        assert seen["node_id"] == "welcome"
        assert seen["worker_id"] == "test-worker"
        assert seen["idempotency_key"] == f"{execution.id}:welcome:1"


class ConflictingStore(InMemoryStore):
    """Fails the next N saves with a version conflict."""

    def __init__(self, conflicts: int = 1):
        super().__init__()
        self.conflicts = conflicts

    async def save_execution(self, execution, expected_version, transition=None):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrencyConflictError(execution.id, expected_version)
        return await super().save_execution(execution, expected_version, transition)


class TestConcurrency:
    @pytest.fixture
    def conflicting_store(self) -> ConflictingStore:
        return ConflictingStore(conflicts=0)

    @pytest.fixture
    def conflicting_engine(self, conflicting_store, email_sender, platform, notifier, clock) -> ExecutionEngine:
        return ExecutionEngine(
            store=conflicting_store,
            email_sender=email_sender,
            tag_store=platform,
            subscribers=platform,
            notifier=notifier,
            clock=clock,
            max_conflict_retries=3,
        )

    @pytest_asyncio.fixture
    async def execution(
        self, conflicting_store, conflicting_engine, platform, email_sender, make_event, welcome_graph, subscribe_trigger, clock
    ):
        matcher = TriggerMatcher(conflicting_store, platform, clock=clock)
        service = AutomationService(conflicting_store, conflicting_engine, matcher, email_sender, clock=clock)
        workflow = await service.create_workflow("pub_1", "Welcome", subscribe_trigger, graph=welcome_graph)
        await service.set_status(workflow.id, WorkflowStatus.ACTIVE)
        return await start(matcher, make_event)

    @pytest.mark.asyncio
    async def test_conflict_is_retried_from_a_fresh_read(self, conflicting_store, conflicting_engine, execution):
        conflicting_store.conflicts = 2
        outcome = await conflicting_engine.step(execution.id)

        assert outcome.progressed is True
        assert outcome.execution.current_node_id == "welcome"
        assert outcome.execution.version == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_gives_up_without_progress(
        self, conflicting_store, conflicting_engine, execution
    ):
        conflicting_store.conflicts = 10
        outcome = await conflicting_engine.step(execution.id)

        assert outcome.progressed is False
        assert outcome.execution.version == 0


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_waiting_execution(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, scheduler, email_sender, clock
    ):
        await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)

        cancelled = await engine.cancel(execution.id, reason="subscriber left")

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.wake_at is None

        clock.advance(days=3)
        assert await scheduler.tick() == 0
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_cancel_finished_execution_is_rejected(
        self, engine, matcher, make_event, create_active_workflow, branching_graph
    ):
        await create_active_workflow(branching_graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)

        with pytest.raises(InvalidStateTransitionError):
            await engine.cancel(execution.id)


class TestDefinitionChanges:
    """Tests for executions whose workflow changed underneath them."""

    @pytest.mark.asyncio
    async def test_removed_node_fails_execution(
        self, engine, matcher, make_event, create_active_workflow, welcome_graph, store, notifier, clock
    ):
        workflow = await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)

        stored = await store.get_workflow(workflow.id)
        stored.graph = WorkflowGraph.model_validate({
            "nodes": [n.model_dump() for n in welcome_graph.nodes if n.id in ("trigger", "welcome")],
            "edges": [welcome_graph.edges[0].model_dump()],
        })
        await store.update_workflow(stored, stored.version)

        clock.advance(days=2)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.FAILED
        assert "'wait'" in result.last_error
        assert len(notifier.notified) == 1

    @pytest.mark.asyncio
    async def test_paused_workflow_keeps_running(
        self, engine, service, matcher, make_event, create_active_workflow, welcome_graph, clock
    ):
        workflow = await create_active_workflow(welcome_graph)
        execution = await start(matcher, make_event)
        await engine.run(execution.id)

        await service.set_status(workflow.id, WorkflowStatus.PAUSED)
        clock.advance(days=2)
        result = await engine.run(execution.id)

        assert result.status == ExecutionStatus.COMPLETED
