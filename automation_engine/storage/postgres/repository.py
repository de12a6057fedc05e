"""
Repository layer for automation data access.

Provides high-level data access methods; all methods operate within the
provided session's transaction.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, func, select, tuple_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from automation_engine.core.models import (
    RetryConfig,
    TriggerKind,
    TriggerSpec,
    Workflow,
    WorkflowExecution,
    WorkflowGraph,
)
from automation_engine.core.state_machine import ExecutionStatus, StateTransition, WorkflowStatus
from automation_engine.storage.base import Cursor
from automation_engine.storage.postgres.models import (
    AutomationWorkflowModel,
    ExecutionStepModel,
    WorkflowExecutionModel,
)


class AutomationRepository:
    """
    Repository for workflows, executions and execution steps.

    All methods operate within the provided session's transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Workflow Operations ====================

    async def create_workflow(self, workflow: Workflow) -> AutomationWorkflowModel:
        """Create a new workflow."""
        model = AutomationWorkflowModel(id=workflow.id, created_at=workflow.created_at, version=workflow.version)
        self._apply_workflow(model, workflow)

        self.session.add(model)
        await self.session.flush()
        return model

    async def get_workflow(self, workflow_id: UUID) -> Optional[AutomationWorkflowModel]:
        """Get workflow by ID."""
        result = await self.session.execute(
            select(AutomationWorkflowModel)
            .where(AutomationWorkflowModel.id == workflow_id)
        )
        return result.scalar_one_or_none()

    async def update_workflow(self, workflow: Workflow, expected_version: int) -> int:
        """
        Versioned overwrite.

        Returns the number of rows updated: 0 means the version moved on
        (or the row does not exist).
        """
        result = await self.session.execute(
            update(AutomationWorkflowModel)
            .where(
                and_(
                    AutomationWorkflowModel.id == workflow.id,
                    AutomationWorkflowModel.version == expected_version,
                )
            )
            .values(
                name=workflow.name,
                description=workflow.description,
                status=workflow.status.value,
                trigger_kind=workflow.trigger.kind.value,
                trigger=workflow.trigger.model_dump(mode="json"),
                graph=workflow.graph.model_dump(mode="json"),
                retry_config=workflow.retry.model_dump(mode="json"),
                version=expected_version + 1,
                updated_at=workflow.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_workflows(
        self,
        publication_id: str,
        status: Optional[WorkflowStatus] = None,
    ) -> list[AutomationWorkflowModel]:
        query = select(AutomationWorkflowModel).where(
            AutomationWorkflowModel.publication_id == publication_id
        )
        if status is not None:
            query = query.where(AutomationWorkflowModel.status == status.value)

        result = await self.session.execute(
            query.order_by(AutomationWorkflowModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def find_active_workflows(
        self,
        publication_id: str,
        kind: TriggerKind,
    ) -> list[AutomationWorkflowModel]:
        result = await self.session.execute(
            select(AutomationWorkflowModel).where(
                and_(
                    AutomationWorkflowModel.publication_id == publication_id,
                    AutomationWorkflowModel.status == WorkflowStatus.ACTIVE.value,
                    AutomationWorkflowModel.trigger_kind == kind.value,
                )
            )
        )
        return list(result.scalars().all())

    # ==================== Execution Operations ====================

    async def create_execution(self, execution: WorkflowExecution) -> Optional[WorkflowExecutionModel]:
        """
        Insert an execution inside a savepoint.

        Returns None if (workflow_id, event_id) already exists.
        """
        model = WorkflowExecutionModel(
            id=execution.id,
            workflow_id=execution.workflow_id,
            publication_id=execution.publication_id,
            subscriber_id=execution.subscriber_id,
            event_id=execution.event_id,
            status=execution.status.value,
            current_node_id=execution.current_node_id,
            context=execution.context,
            wake_at=execution.wake_at,
            last_error=execution.last_error,
            version=execution.version,
            created_at=execution.created_at,
            updated_at=execution.updated_at,
            completed_at=execution.completed_at,
        )

        try:
            async with self.session.begin_nested():
                self.session.add(model)
                await self.session.flush()
        except IntegrityError:
            return None
        return model

    async def get_execution(self, execution_id: UUID) -> Optional[WorkflowExecutionModel]:
        """Get execution by ID."""
        result = await self.session.execute(
            select(WorkflowExecutionModel)
            .where(WorkflowExecutionModel.id == execution_id)
        )
        return result.scalar_one_or_none()

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected_version: int,
    ) -> int:
        """
        Versioned update.

        Returns the number of rows updated: 0 means the version moved on
        (or the row does not exist).
        """
        result = await self.session.execute(
            update(WorkflowExecutionModel)
            .where(
                and_(
                    WorkflowExecutionModel.id == execution.id,
                    WorkflowExecutionModel.version == expected_version,
                )
            )
            .values(
                status=execution.status.value,
                current_node_id=execution.current_node_id,
                context=execution.context,
                wake_at=execution.wake_at,
                last_error=execution.last_error,
                version=expected_version + 1,
                updated_at=execution.updated_at,
                completed_at=execution.completed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def add_step(self, execution_id: UUID, transition: StateTransition) -> None:
        """Append a transition to the audit log."""
        self.session.add(ExecutionStepModel(
            execution_id=execution_id,
            from_status=transition.from_state,
            to_status=transition.to_state,
            reason=transition.reason,
            triggered_by=transition.triggered_by,
            details=transition.metadata,
            created_at=transition.timestamp,
        ))
        await self.session.flush()

    async def list_steps(self, execution_id: UUID) -> list[ExecutionStepModel]:
        result = await self.session.execute(
            select(ExecutionStepModel)
            .where(ExecutionStepModel.execution_id == execution_id)
            .order_by(ExecutionStepModel.id)
        )
        return list(result.scalars().all())

    async def find_due_executions(
        self,
        now: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecutionModel]:
        """WAITING executions whose wake time passed, keyset-paged on (wake_at, id)."""
        conditions = [
            WorkflowExecutionModel.status == ExecutionStatus.WAITING.value,
            WorkflowExecutionModel.wake_at <= now,
        ]
        if after is not None:
            conditions.append(
                tuple_(WorkflowExecutionModel.wake_at, WorkflowExecutionModel.id) > tuple_(*after)
            )

        result = await self.session.execute(
            select(WorkflowExecutionModel)
            .where(and_(*conditions))
            .order_by(WorkflowExecutionModel.wake_at, WorkflowExecutionModel.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stalled_executions(
        self,
        before: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecutionModel]:
        """RUNNING executions not touched since ``before``, keyset-paged on (updated_at, id)."""
        conditions = [
            WorkflowExecutionModel.status == ExecutionStatus.RUNNING.value,
            WorkflowExecutionModel.updated_at < before,
        ]
        if after is not None:
            conditions.append(
                tuple_(WorkflowExecutionModel.updated_at, WorkflowExecutionModel.id) > tuple_(*after)
            )

        result = await self.session.execute(
            select(WorkflowExecutionModel)
            .where(and_(*conditions))
            .order_by(WorkflowExecutionModel.updated_at, WorkflowExecutionModel.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecutionModel]:
        query = select(WorkflowExecutionModel)
        if publication_id is not None:
            query = query.where(WorkflowExecutionModel.publication_id == publication_id)
        if workflow_id is not None:
            query = query.where(WorkflowExecutionModel.workflow_id == workflow_id)
        if status is not None:
            query = query.where(WorkflowExecutionModel.status == status.value)

        result = await self.session.execute(
            query
            .order_by(WorkflowExecutionModel.created_at.desc(), WorkflowExecutionModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_by_status(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
    ) -> list[tuple[str, int]]:
        query = select(WorkflowExecutionModel.status, func.count())
        if publication_id is not None:
            query = query.where(WorkflowExecutionModel.publication_id == publication_id)
        if workflow_id is not None:
            query = query.where(WorkflowExecutionModel.workflow_id == workflow_id)

        result = await self.session.execute(query.group_by(WorkflowExecutionModel.status))
        return [(status, count) for status, count in result.all()]

    async def count_by_workflow(self, publication_id: str) -> list[tuple[UUID, str, int]]:
        result = await self.session.execute(
            select(
                WorkflowExecutionModel.workflow_id,
                WorkflowExecutionModel.status,
                func.count(),
            )
            .where(WorkflowExecutionModel.publication_id == publication_id)
            .group_by(WorkflowExecutionModel.workflow_id, WorkflowExecutionModel.status)
        )
        return [(workflow_id, status, count) for workflow_id, status, count in result.all()]

    # ==================== Helper Methods ====================

    @staticmethod
    def _apply_workflow(model: AutomationWorkflowModel, workflow: Workflow) -> None:
        model.publication_id = workflow.publication_id
        model.name = workflow.name
        model.description = workflow.description
        model.status = workflow.status.value
        model.trigger_kind = workflow.trigger.kind.value
        model.trigger = workflow.trigger.model_dump(mode="json")
        model.graph = workflow.graph.model_dump(mode="json")
        model.retry_config = workflow.retry.model_dump(mode="json")
        model.updated_at = workflow.updated_at

    @staticmethod
    def model_to_workflow(model: AutomationWorkflowModel) -> Workflow:
        """Convert database model to domain model."""
        return Workflow(
            id=model.id,
            publication_id=model.publication_id,
            name=model.name,
            description=model.description,
            status=WorkflowStatus(model.status),
            trigger=TriggerSpec.model_validate(model.trigger),
            graph=WorkflowGraph.model_validate(model.graph or {}),
            retry=RetryConfig.model_validate(model.retry_config or {}),
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def model_to_execution(model: WorkflowExecutionModel) -> WorkflowExecution:
        """Convert database model to domain model."""
        return WorkflowExecution(
            id=model.id,
            workflow_id=model.workflow_id,
            publication_id=model.publication_id,
            subscriber_id=model.subscriber_id,
            event_id=model.event_id,
            status=ExecutionStatus(model.status),
            current_node_id=model.current_node_id,
            context=dict(model.context or {}),
            wake_at=model.wake_at,
            last_error=model.last_error,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
        )

    @staticmethod
    def model_to_transition(model: ExecutionStepModel) -> StateTransition:
        return StateTransition(
            from_state=model.from_status,
            to_state=model.to_status,
            timestamp=model.created_at,
            reason=model.reason,
            triggered_by=model.triggered_by,
            metadata=dict(model.details or {}),
        )