"""
Storage interfaces for workflows and executions.

Both the PostgreSQL store and the in-process store implement these with the
same semantics: versioned workflow and execution writes, unique
(workflow_id, event_id) and an append-only log of committed transitions.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

from automation_engine.core.models import TriggerKind, Workflow, WorkflowExecution
from automation_engine.core.state_machine import ExecutionStatus, StateTransition, WorkflowStatus

# Keyset cursor for paging ordered by (timestamp, id)
Cursor = tuple[datetime, UUID]


class StoreError(Exception):
    """Base class for storage errors."""


class ConcurrencyConflictError(StoreError):
    """The row changed since it was read; the write was not applied."""

    def __init__(self, record_id: UUID, expected_version: int, kind: str = "Execution"):
        self.record_id = record_id
        self.expected_version = expected_version
        self.kind = kind
        super().__init__(f"{kind} {record_id} is no longer at version {expected_version}")


class PersistenceError(StoreError):
    """The backing store failed; the row keeps its last committed state."""


class WorkflowNotFoundError(StoreError):
    def __init__(self, workflow_id: UUID):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class ExecutionNotFoundError(StoreError):
    def __init__(self, execution_id: UUID):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class WorkflowStore(ABC):
    """Persistence for workflow definitions."""

    @abstractmethod
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        pass

    @abstractmethod
    async def get_workflow(self, workflow_id: UUID) -> Optional[Workflow]:
        pass

    @abstractmethod
    async def update_workflow(self, workflow: Workflow, expected_version: int) -> Workflow:
        """
        Replace a stored workflow if its version still equals expected_version.

        Returns:
            The stored workflow with its version incremented

        Raises:
            ConcurrencyConflictError: If the stored version differs
            WorkflowNotFoundError: If it does not exist
        """
        pass

    @abstractmethod
    async def list_workflows(
        self,
        publication_id: str,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        pass

    @abstractmethod
    async def find_active_workflows(
        self,
        publication_id: str,
        kind: TriggerKind,
    ) -> list[Workflow]:
        """ACTIVE workflows of a publication with the given trigger kind."""
        pass


class ExecutionStore(ABC):
    """Persistence for workflow executions."""

    @abstractmethod
    async def create_execution(self, execution: WorkflowExecution) -> Optional[WorkflowExecution]:
        """
        Insert a new execution.

        Returns None when (workflow_id, event_id) already exists.
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: UUID) -> Optional[WorkflowExecution]:
        pass

    @abstractmethod
    async def save_execution(
        self,
        execution: WorkflowExecution,
        expected_version: int,
        transition: Optional[StateTransition] = None,
    ) -> WorkflowExecution:
        """
        Write an execution if the stored version still equals expected_version.

        Args:
            execution: New state of the execution
            expected_version: Version the caller read
            transition: Audit record appended in the same write

        Returns:
            The stored execution with its version incremented

        Raises:
            ConcurrencyConflictError: If the stored version differs
            ExecutionNotFoundError: If the execution does not exist
        """
        pass

    @abstractmethod
    async def find_due_executions(
        self,
        now: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecution]:
        """WAITING executions with wake_at <= now ordered by (wake_at, id)."""
        pass

    @abstractmethod
    async def find_stalled_executions(
        self,
        before: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecution]:
        """RUNNING executions last updated before ``before``, ordered by (updated_at, id)."""
        pass

    @abstractmethod
    async def list_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        """Newest first."""
        pass

    @abstractmethod
    async def count_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
    ) -> dict[ExecutionStatus, int]:
        """Execution counts per status; every status is present."""
        pass

    @abstractmethod
    async def count_executions_by_workflow(
        self,
        publication_id: str,
    ) -> dict[UUID, dict[ExecutionStatus, int]]:
        pass

    @abstractmethod
    async def list_transitions(self, execution_id: UUID) -> list[StateTransition]:
        """Committed transitions of an execution, oldest first."""
        pass


class AutomationStore(WorkflowStore, ExecutionStore):
    """Complete store used by the engine and service."""

    async def close(self) -> None:
        pass


def empty_counts() -> dict[ExecutionStatus, int]:
    return {status: 0 for status in ExecutionStatus}
