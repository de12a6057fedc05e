"""PostgreSQL implementation of the automation store."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from automation_engine.core.models import TriggerKind, Workflow, WorkflowExecution
from automation_engine.core.state_machine import ExecutionStatus, StateTransition, WorkflowStatus
from automation_engine.storage.base import (
    AutomationStore,
    ConcurrencyConflictError,
    Cursor,
    ExecutionNotFoundError,
    PersistenceError,
    StoreError,
    WorkflowNotFoundError,
    empty_counts,
)
from automation_engine.storage.postgres.database import Database
from automation_engine.storage.postgres.repository import AutomationRepository

logger = logging.getLogger(__name__)


class PostgresStore(AutomationStore):
    """
    Store backed by PostgreSQL.

    Every operation runs in its own short transaction; no transaction is
    held while the engine talks to external services.
    """

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def _repository(self) -> AsyncGenerator[AutomationRepository, None]:
        try:
            async with self.database.session() as session:
                yield AutomationRepository(session)
        except StoreError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database operation failed: {e}")
            raise PersistenceError(str(e)) from e

    async def close(self) -> None:
        await self.database.close()

    # ==================== Workflow Operations ====================

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        async with self._repository() as repo:
            model = await repo.create_workflow(workflow)
            return repo.model_to_workflow(model)

    async def get_workflow(self, workflow_id: UUID) -> Optional[Workflow]:
        async with self._repository() as repo:
            model = await repo.get_workflow(workflow_id)
            return repo.model_to_workflow(model) if model else None

    async def update_workflow(self, workflow: Workflow, expected_version: int) -> Workflow:
        async with self._repository() as repo:
            updated = await repo.update_workflow(workflow, expected_version)
            if updated == 0:
                if await repo.get_workflow(workflow.id) is None:
                    raise WorkflowNotFoundError(workflow.id)
                raise ConcurrencyConflictError(workflow.id, expected_version, kind="Workflow")

        return workflow.model_copy(update={"version": expected_version + 1})

    async def list_workflows(
        self,
        publication_id: str,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        async with self._repository() as repo:
            models = await repo.list_workflows(publication_id, status)
            return [repo.model_to_workflow(m) for m in models]

    async def find_active_workflows(
        self,
        publication_id: str,
        kind: TriggerKind,
    ) -> list[Workflow]:
        async with self._repository() as repo:
            models = await repo.find_active_workflows(publication_id, kind)
            return [repo.model_to_workflow(m) for m in models]

    # ==================== Execution Operations ====================

    async def create_execution(self, execution: WorkflowExecution) -> Optional[WorkflowExecution]:
        async with self._repository() as repo:
            model = await repo.create_execution(execution)
            if model is None:
                logger.debug(
                    f"Execution for workflow {execution.workflow_id} and event "
                    f"{execution.event_id} already exists"
                )
                return None
            return repo.model_to_execution(model)

    async def get_execution(self, execution_id: UUID) -> Optional[WorkflowExecution]:
        async with self._repository() as repo:
            model = await repo.get_execution(execution_id)
            return repo.model_to_execution(model) if model else None

    async def save_execution(
        self,
        execution: WorkflowExecution,
        expected_version: int,
        transition: Optional[StateTransition] = None,
    ) -> WorkflowExecution:
        async with self._repository() as repo:
            updated = await repo.update_execution(execution, expected_version)
            if updated == 0:
                if await repo.get_execution(execution.id) is None:
                    raise ExecutionNotFoundError(execution.id)
                raise ConcurrencyConflictError(execution.id, expected_version)

            if transition is not None:
                await repo.add_step(execution.id, transition)

        return execution.model_copy(update={"version": expected_version + 1})

    async def find_due_executions(
        self,
        now: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecution]:
        async with self._repository() as repo:
            models = await repo.find_due_executions(now, limit, after)
            return [repo.model_to_execution(m) for m in models]

    async def find_stalled_executions(
        self,
        before: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecution]:
        async with self._repository() as repo:
            models = await repo.find_stalled_executions(before, limit, after)
            return [repo.model_to_execution(m) for m in models]

    async def list_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        async with self._repository() as repo:
            models = await repo.list_executions(publication_id, workflow_id, status, limit, offset)
            return [repo.model_to_execution(m) for m in models]

    async def count_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
    ) -> dict[ExecutionStatus, int]:
        counts = empty_counts()
        async with self._repository() as repo:
            for status, count in await repo.count_by_status(publication_id, workflow_id):
                counts[ExecutionStatus(status)] = count
        return counts

    async def count_executions_by_workflow(
        self,
        publication_id: str,
    ) -> dict[UUID, dict[ExecutionStatus, int]]:
        result: dict[UUID, dict[ExecutionStatus, int]] = {}
        async with self._repository() as repo:
            for workflow_id, status, count in await repo.count_by_workflow(publication_id):
                result.setdefault(workflow_id, empty_counts())[ExecutionStatus(status)] = count
        return result

    async def list_transitions(self, execution_id: UUID) -> list[StateTransition]:
        async with self._repository() as repo:
            return [repo.model_to_transition(m) for m in await repo.list_steps(execution_id)]
