"""
In-process store.

Same semantics as the PostgreSQL store; used by tests and by
``store_backend=memory`` for local development.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Optional
from uuid import UUID

from automation_engine.core.models import TriggerKind, Workflow, WorkflowExecution
from automation_engine.core.state_machine import ExecutionStatus, StateTransition, WorkflowStatus
from automation_engine.storage.base import (
    AutomationStore,
    ConcurrencyConflictError,
    Cursor,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
    empty_counts,
)


class InMemoryStore(AutomationStore):
    """
    Dict-backed store guarded by a single asyncio lock.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._workflows: dict[UUID, Workflow] = {}
        self._executions: dict[UUID, WorkflowExecution] = {}
        self._event_keys: dict[tuple[UUID, str], UUID] = {}
        self._transitions: dict[UUID, list[StateTransition]] = defaultdict(list)

    # ==================== Workflow Operations ====================

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        async with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
            return workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: UUID) -> Optional[Workflow]:
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            return workflow.model_copy(deep=True) if workflow else None

    async def update_workflow(self, workflow: Workflow, expected_version: int) -> Workflow:
        async with self._lock:
            current = self._workflows.get(workflow.id)
            if current is None:
                raise WorkflowNotFoundError(workflow.id)
            if current.version != expected_version:
                raise ConcurrencyConflictError(workflow.id, expected_version, kind="Workflow")

            stored = workflow.model_copy(deep=True, update={"version": expected_version + 1})
            self._workflows[workflow.id] = stored
            return stored.model_copy(deep=True)

    async def list_workflows(
        self,
        publication_id: str,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        async with self._lock:
            workflows = [
                w for w in self._workflows.values()
                if w.publication_id == publication_id and (status is None or w.status == status)
            ]
        workflows.sort(key=lambda w: w.created_at, reverse=True)
        return [w.model_copy(deep=True) for w in workflows]

    async def find_active_workflows(
        self,
        publication_id: str,
        kind: TriggerKind,
    ) -> list[Workflow]:
        async with self._lock:
            return [
                w.model_copy(deep=True)
                for w in self._workflows.values()
                if w.publication_id == publication_id
                and w.status == WorkflowStatus.ACTIVE
                and w.trigger.kind == kind
            ]

    # ==================== Execution Operations ====================

    async def create_execution(self, execution: WorkflowExecution) -> Optional[WorkflowExecution]:
        key = (execution.workflow_id, execution.event_id)
        async with self._lock:
            if key in self._event_keys:
                return None
            stored = execution.model_copy(deep=True)
            self._executions[stored.id] = stored
            self._event_keys[key] = stored.id
            return stored.model_copy(deep=True)

    async def get_execution(self, execution_id: UUID) -> Optional[WorkflowExecution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            return execution.model_copy(deep=True) if execution else None

    async def save_execution(
        self,
        execution: WorkflowExecution,
        expected_version: int,
        transition: Optional[StateTransition] = None,
    ) -> WorkflowExecution:
        async with self._lock:
            current = self._executions.get(execution.id)
            if current is None:
                raise ExecutionNotFoundError(execution.id)
            if current.version != expected_version:
                raise ConcurrencyConflictError(execution.id, expected_version)

            stored = execution.model_copy(deep=True, update={"version": expected_version + 1})
            self._executions[execution.id] = stored
            if transition is not None:
                self._transitions[execution.id].append(transition.model_copy(deep=True))
            return stored.model_copy(deep=True)

    async def find_due_executions(
        self,
        now: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecution]:
        async with self._lock:
            due = [
                e for e in self._executions.values()
                if e.is_due(now) and (after is None or (e.wake_at, e.id) > after)
            ]
        due.sort(key=lambda e: (e.wake_at, e.id))
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def find_stalled_executions(
        self,
        before: datetime,
        limit: int,
        after: Optional[Cursor] = None,
    ) -> list[WorkflowExecution]:
        async with self._lock:
            stalled = [
                e for e in self._executions.values()
                if e.status == ExecutionStatus.RUNNING
                and e.updated_at < before
                and (after is None or (e.updated_at, e.id) > after)
            ]
        stalled.sort(key=lambda e: (e.updated_at, e.id))
        return [e.model_copy(deep=True) for e in stalled[:limit]]

    async def list_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        async with self._lock:
            executions = [
                e for e in self._executions.values()
                if (publication_id is None or e.publication_id == publication_id)
                and (workflow_id is None or e.workflow_id == workflow_id)
                and (status is None or e.status == status)
            ]
        executions.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [e.model_copy(deep=True) for e in executions[offset:offset + limit]]

    async def count_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
    ) -> dict[ExecutionStatus, int]:
        counts = empty_counts()
        async with self._lock:
            for e in self._executions.values():
                if publication_id is not None and e.publication_id != publication_id:
                    continue
                if workflow_id is not None and e.workflow_id != workflow_id:
                    continue
                counts[e.status] += 1
        return counts

    async def count_executions_by_workflow(
        self,
        publication_id: str,
    ) -> dict[UUID, dict[ExecutionStatus, int]]:
        result: dict[UUID, dict[ExecutionStatus, int]] = {}
        async with self._lock:
            for e in self._executions.values():
                if e.publication_id != publication_id:
                    continue
                result.setdefault(e.workflow_id, empty_counts())[e.status] += 1
        return result

    async def list_transitions(self, execution_id: UUID) -> list[StateTransition]:
        async with self._lock:
            return [t.model_copy(deep=True) for t in self._transitions.get(execution_id, [])]
