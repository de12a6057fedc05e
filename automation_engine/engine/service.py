"""
Automation service.

The operations exposed to the rest of the platform: workflow management,
execution queries and cancellation, template preview and test sends, and
event processing.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from automation_engine.collaborators.base import EmailSender
from automation_engine.core.graph import (
    ValidationError,
    WorkflowValidationError,
    ensure_valid,
)
from automation_engine.core.models import (
    DomainEvent,
    RetryConfig,
    TriggerSpec,
    Workflow,
    WorkflowExecution,
    WorkflowGraph,
    utcnow,
)
from automation_engine.core.state_machine import (
    ExecutionStatus,
    StateTransition,
    WorkflowStatus,
    WorkflowStatusMachine,
)
from automation_engine.engine.executor import ExecutionEngine
from automation_engine.engine.matcher import TriggerMatcher
from automation_engine.storage.base import (
    AutomationStore,
    ConcurrencyConflictError,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
)
from automation_engine.template.variables import (
    SAMPLE_CONTEXT,
    VariableRenderer,
    VariableValidation,
)

logger = logging.getLogger(__name__)


class WorkflowStats(BaseModel):
    """Execution counts for one workflow."""

    workflow_id: UUID
    name: str
    status: WorkflowStatus
    counts: dict[ExecutionStatus, int]
    total: int


class PublicationDashboard(BaseModel):
    """Derived counters for a publication's automations page."""

    publication_id: str
    workflows_total: int
    active_workflows: int
    executions: dict[ExecutionStatus, int]
    workflows: list[WorkflowStats] = Field(default_factory=list)


class TemplatePreview(BaseModel):
    subject: str
    html: str
    invalid_variables: list[str] = Field(default_factory=list)
    missing_variables: list[str] = Field(default_factory=list)


class AutomationService:
    """Facade used by the HTTP API and the worker."""

    TEST_SUBJECT_PREFIX = "[TEST] "

    def __init__(
        self,
        store: AutomationStore,
        engine: ExecutionEngine,
        matcher: TriggerMatcher,
        email_sender: EmailSender,
        renderer: Optional[VariableRenderer] = None,
        retry_defaults: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        max_conflict_retries: int = 3,
    ):
        self.store = store
        self.engine = engine
        self.matcher = matcher
        self.email_sender = email_sender
        self.renderer = renderer or VariableRenderer(clock=clock)
        self.retry_defaults = retry_defaults or RetryConfig()
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries

    # ==================== Workflow Management ====================

    async def create_workflow(
        self,
        publication_id: str,
        name: str,
        trigger: TriggerSpec,
        description: Optional[str] = None,
        graph: Optional[WorkflowGraph] = None,
        retry: Optional[RetryConfig] = None,
    ) -> Workflow:
        """
        Create a DRAFT workflow.

        Raises:
            WorkflowValidationError: If a non-empty graph is invalid
        """
        now = self.clock()
        workflow = Workflow(
            publication_id=publication_id,
            name=name,
            description=description,
            trigger=trigger,
            graph=graph or WorkflowGraph(),
            retry=retry or self.retry_defaults,
            created_at=now,
            updated_at=now,
        )
        self._validate_for_save(workflow)

        stored = await self.store.create_workflow(workflow)
        logger.info(f"Workflow {stored.id} '{stored.name}' created for publication {publication_id}")
        return stored

    async def update_workflow(self, workflow_id: UUID, **changes: Any) -> Workflow:
        """
        Update name, description, trigger, graph or retry policy.

        The stored definition is left untouched when validation fails. The
        changes are re-applied to a fresh read if another writer got there
        first, so a concurrent status change is never overwritten.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            WorkflowValidationError: If the new graph is invalid
            ConcurrencyConflictError: If the row kept changing under us
        """
        allowed = {"name", "description", "trigger", "graph", "retry"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        def apply(current: Workflow) -> Workflow:
            data = current.model_dump()
            for key, value in changes.items():
                if value is None and key != "description":
                    continue
                data[key] = value.model_dump() if isinstance(value, BaseModel) else value
            data["updated_at"] = self.clock()

            updated = Workflow.model_validate(data)
            self._validate_for_save(updated)
            return updated

        stored = await self._write_workflow(workflow_id, apply)
        logger.info(f"Workflow {workflow_id} updated ({sorted(changes)})")
        return stored

    async def get_workflow(self, workflow_id: UUID) -> Workflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(
        self,
        publication_id: str,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        return await self.store.list_workflows(publication_id, status)

    async def set_status(self, workflow_id: UUID, status: WorkflowStatus) -> Workflow:
        """
        Move a workflow between DRAFT, ACTIVE and PAUSED.

        Activation re-validates the graph. Pausing only stops new
        executions; running and waiting ones carry on.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            WorkflowValidationError: If activating an invalid graph
            InvalidStateTransitionError: If the status change is not allowed
            ConcurrencyConflictError: If the row kept changing under us
        """

        def apply(current: Workflow) -> Optional[Workflow]:
            if current.status == status:
                return None

            WorkflowStatusMachine(current.status).transition(status)
            if status == WorkflowStatus.ACTIVE:
                ensure_valid(current.graph, self.renderer)

            return current.model_copy(update={"status": status, "updated_at": self.clock()})

        stored = await self._write_workflow(workflow_id, apply)
        logger.info(f"Workflow {workflow_id} is now {stored.status.value}")
        return stored

    async def _write_workflow(
        self,
        workflow_id: UUID,
        apply: Callable[[Workflow], Optional[Workflow]],
    ) -> Workflow:
        """
        Versioned read-modify-write of a workflow.

        ``apply`` builds the new state from the current one, or returns None
        when there is nothing to write. It runs again on every conflict.
        """
        attempt = 0
        while True:
            current = await self.get_workflow(workflow_id)
            updated = apply(current)
            if updated is None:
                return current

            try:
                return await self.store.update_workflow(updated, expected_version=current.version)
            except ConcurrencyConflictError:
                attempt += 1
                if attempt > self.max_conflict_retries:
                    logger.error(f"Workflow {workflow_id} kept changing; giving up after {attempt} attempts")
                    raise
                logger.warning(f"Workflow {workflow_id} changed concurrently, retrying ({attempt})")

    def _validate_for_save(self, workflow: Workflow) -> None:
        # Drafts may be saved before the editor has placed any node
        if workflow.graph.is_empty and workflow.status == WorkflowStatus.DRAFT:
            return
        ensure_valid(workflow.graph, self.renderer)

    # ==================== Executions ====================

    async def get_execution(self, execution_id: UUID) -> WorkflowExecution:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        publication_id: Optional[str] = None,
        workflow_id: Optional[UUID] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        return await self.store.list_executions(
            publication_id=publication_id,
            workflow_id=workflow_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    async def get_execution_history(self, execution_id: UUID) -> list[StateTransition]:
        await self.get_execution(execution_id)
        return await self.store.list_transitions(execution_id)

    async def execution_counts(self, workflow_id: UUID) -> dict[ExecutionStatus, int]:
        await self.get_workflow(workflow_id)
        return await self.store.count_executions(workflow_id=workflow_id)

    async def dashboard(self, publication_id: str) -> PublicationDashboard:
        """Counts are derived from execution rows, never stored separately."""
        workflows = await self.store.list_workflows(publication_id)
        per_workflow = await self.store.count_executions_by_workflow(publication_id)
        totals = await self.store.count_executions(publication_id=publication_id)

        stats = []
        for workflow in workflows:
            counts = per_workflow.get(workflow.id) or {s: 0 for s in ExecutionStatus}
            stats.append(WorkflowStats(
                workflow_id=workflow.id,
                name=workflow.name,
                status=workflow.status,
                counts=counts,
                total=sum(counts.values()),
            ))

        return PublicationDashboard(
            publication_id=publication_id,
            workflows_total=len(workflows),
            active_workflows=sum(1 for w in workflows if w.is_active),
            executions=totals,
            workflows=stats,
        )

    async def cancel_execution(self, execution_id: UUID) -> WorkflowExecution:
        """
        Raises:
            ExecutionNotFoundError: If the execution does not exist
            InvalidStateTransitionError: If it already finished
        """
        return await self.engine.cancel(execution_id, reason="cancelled by user")

    # ==================== Events ====================

    async def process_event(self, event: DomainEvent) -> list[WorkflowExecution]:
        """Match an event and run every new execution until it waits or finishes."""
        created = await self.matcher.handle_event(event)
        results = []
        for execution in created:
            results.append(await self.engine.run(execution.id))
        return results

    # ==================== Templates ====================

    def preview_template(
        self,
        subject: str,
        content: str,
        sample: Optional[dict[str, Any]] = None,
    ) -> TemplatePreview:
        """Render subject and body against sample data."""
        context = sample or SAMPLE_CONTEXT
        subject_check = self.renderer.validate(subject, context)
        content_check = self.renderer.validate(content, context)

        return TemplatePreview(
            subject=self.renderer.render(subject, context),
            html=self.renderer.render(content, context),
            invalid_variables=_merge(subject_check, content_check, "invalid_variables"),
            missing_variables=_merge(subject_check, content_check, "missing_variables"),
        )

    async def send_test_email(
        self,
        to: str,
        subject: str,
        content: str,
        sample: Optional[dict[str, Any]] = None,
    ) -> TemplatePreview:
        """
        Send a rendered preview to an arbitrary address.

        Raises:
            WorkflowValidationError: If the template uses unknown variables
            ExternalServiceError: If delivery failed
        """
        preview = self.preview_template(subject, content, sample)
        if preview.invalid_variables:
            raise WorkflowValidationError([
                ValidationError(
                    code="INVALID_VARIABLE",
                    message=f"Unknown variable '{token}'",
                    details={"variable": token},
                )
                for token in preview.invalid_variables
            ])

        await self.email_sender.send(
            to,
            f"{self.TEST_SUBJECT_PREFIX}{preview.subject}",
            preview.html,
            idempotency_key=f"test:{uuid4()}",
        )
        logger.info(f"Test email sent to {to}")
        return preview


def _merge(first: VariableValidation, second: VariableValidation, attr: str) -> list[str]:
    seen: dict[str, None] = {}
    for token in getattr(first, attr) + getattr(second, attr):
        seen.setdefault(token, None)
    return list(seen)

