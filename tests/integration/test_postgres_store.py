"""
PostgreSQL store integration tests.

Requires a disposable PostgreSQL database on the configured host;
skipped otherwise. Tables are truncated before every test.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import text

from automation_engine.config import get_settings
from automation_engine.core.models import TriggerKind, TriggerSpec, Workflow, WorkflowExecution, utcnow
from automation_engine.core.state_machine import ExecutionStatus, StateTransition, WorkflowStatus
from automation_engine.engine.executor import ExecutionEngine
from automation_engine.engine.matcher import TriggerMatcher
from automation_engine.engine.service import AutomationService
from automation_engine.storage.base import ConcurrencyConflictError
from automation_engine.storage.postgres import Database, PostgresStore

pytestmark = pytest.mark.postgres


@pytest_asyncio.fixture
async def database():
    """Create database connection and schema for tests."""
    db = Database(get_settings())
    await db.init()

    try:
        await db.health_check()
    except Exception as e:
        await db.close()
        pytest.skip(f"PostgreSQL not available: {e}")

    await db.create_schema()
    async with db.session() as session:
        await session.execute(text("TRUNCATE execution_steps, workflow_executions, automation_workflows"))

    yield db

    await db.close()


@pytest.fixture
def pg_store(database) -> PostgresStore:
    return PostgresStore(database)


@pytest.fixture
def publication_id() -> str:
    return f"pub_{uuid4().hex[:12]}"


def new_workflow(publication_id: str, graph, status: WorkflowStatus = WorkflowStatus.ACTIVE) -> Workflow:
    return Workflow(
        publication_id=publication_id,
        name="Welcome",
        trigger=TriggerSpec(kind=TriggerKind.SUBSCRIBE),
        graph=graph,
        status=status,
    )


def new_execution(workflow: Workflow, event_id: str = "evt_1", **fields) -> WorkflowExecution:
    return WorkflowExecution(
        workflow_id=workflow.id,
        publication_id=workflow.publication_id,
        subscriber_id="sub_1",
        event_id=event_id,
        current_node_id="trigger",
        **fields,
    )


class TestWorkflows:
    @pytest.mark.asyncio
    async def test_round_trip(self, pg_store, publication_id, welcome_graph):
        workflow = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))

        loaded = await pg_store.get_workflow(workflow.id)

        assert loaded.name == "Welcome"
        assert loaded.trigger == workflow.trigger
        assert loaded.graph.get_node("wait").delay == 2
        assert loaded.retry == workflow.retry

    @pytest.mark.asyncio
    async def test_find_active_by_kind(self, pg_store, publication_id, welcome_graph):
        active = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))
        await pg_store.create_workflow(new_workflow(publication_id, welcome_graph, WorkflowStatus.PAUSED))

        found = await pg_store.find_active_workflows(publication_id, TriggerKind.SUBSCRIBE)

        assert [w.id for w in found] == [active.id]
        assert await pg_store.find_active_workflows(publication_id, TriggerKind.UNSUBSCRIBE) == []

    @pytest.mark.asyncio
    async def test_versioned_update(self, pg_store, publication_id, welcome_graph):
        workflow = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))
        paused = await pg_store.update_workflow(
            workflow.model_copy(update={"status": WorkflowStatus.PAUSED}), workflow.version
        )

        with pytest.raises(ConcurrencyConflictError):
            await pg_store.update_workflow(workflow.model_copy(update={"name": "Renamed"}), workflow.version)

        loaded = await pg_store.get_workflow(workflow.id)
        assert paused.version == workflow.version + 1
        assert loaded.version == paused.version
        assert loaded.status == WorkflowStatus.PAUSED
        assert loaded.name == "Welcome"


class TestExecutions:
    @pytest.mark.asyncio
    async def test_duplicate_event_is_rejected(self, pg_store, publication_id, welcome_graph):
        workflow = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))

        first = await pg_store.create_execution(new_execution(workflow, "evt_dup"))
        second = await pg_store.create_execution(new_execution(workflow, "evt_dup"))

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_versioned_save(self, pg_store, publication_id, welcome_graph):
        workflow = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))
        execution = await pg_store.create_execution(new_execution(workflow))

        execution.current_node_id = "welcome"
        saved = await pg_store.save_execution(
            execution,
            0,
            StateTransition(from_state="RUNNING", to_state="RUNNING", reason="trigger fired"),
        )

        assert saved.version == 1
        with pytest.raises(ConcurrencyConflictError):
            await pg_store.save_execution(execution, 0)

        history = await pg_store.list_transitions(execution.id)
        assert [t.reason for t in history] == ["trigger fired"]

    @pytest.mark.asyncio
    async def test_due_executions_page_in_wake_order(self, pg_store, publication_id, welcome_graph):
        workflow = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))
        now = utcnow()
        for minutes in (30, 10, 20):
            await pg_store.create_execution(new_execution(
                workflow,
                f"evt_{minutes}",
                status=ExecutionStatus.WAITING,
                wake_at=now - timedelta(minutes=minutes),
            ))
        await pg_store.create_execution(new_execution(
            workflow,
            "evt_future",
            status=ExecutionStatus.WAITING,
            wake_at=now + timedelta(hours=1),
        ))

        first_page = await pg_store.find_due_executions(now, 2)
        cursor = (first_page[-1].wake_at, first_page[-1].id)
        second_page = await pg_store.find_due_executions(now, 2, cursor)

        assert [e.event_id for e in first_page] == ["evt_30", "evt_20"]
        assert [e.event_id for e in second_page] == ["evt_10"]

    @pytest.mark.asyncio
    async def test_counts(self, pg_store, publication_id, welcome_graph):
        workflow = await pg_store.create_workflow(new_workflow(publication_id, welcome_graph))
        await pg_store.create_execution(new_execution(workflow, "evt_a"))
        await pg_store.create_execution(new_execution(
            workflow, "evt_b", status=ExecutionStatus.WAITING, wake_at=utcnow(),
        ))

        counts = await pg_store.count_executions(workflow_id=workflow.id)
        per_workflow = await pg_store.count_executions_by_workflow(publication_id)

        assert counts[ExecutionStatus.RUNNING] == 1
        assert counts[ExecutionStatus.WAITING] == 1
        assert counts[ExecutionStatus.FAILED] == 0
        assert per_workflow[workflow.id][ExecutionStatus.WAITING] == 1


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_welcome_flow_on_postgres(
        self, pg_store, publication_id, welcome_graph, make_event, platform, email_sender, notifier, clock
    ):
        platform.publications[publication_id] = {"id": publication_id, "name": "Postgres Weekly"}
        engine = ExecutionEngine(
            store=pg_store,
            email_sender=email_sender,
            tag_store=platform,
            subscribers=platform,
            notifier=notifier,
            clock=clock,
        )
        service = AutomationService(
            store=pg_store,
            engine=engine,
            matcher=TriggerMatcher(pg_store, platform, clock=clock),
            email_sender=email_sender,
            clock=clock,
        )
        workflow = await service.create_workflow(
            publication_id, "Welcome", TriggerSpec(kind=TriggerKind.SUBSCRIBE), graph=welcome_graph,
        )
        await service.set_status(workflow.id, WorkflowStatus.ACTIVE)

        [execution] = await service.process_event(make_event(publication_id=publication_id))
        clock.advance(days=2)
        finished = await engine.run(execution.id)

        assert finished.status == ExecutionStatus.COMPLETED
        assert email_sender.sent[0]["html"] == "<p>Thanks for joining Postgres Weekly.</p>"
        assert len(await service.get_execution_history(execution.id)) == 7
