"""
Execution engine.

Advances a single execution through its workflow graph, one persisted
transition at a time:
- Trigger and condition nodes move along an edge
- Wait nodes suspend the execution until ``wake_at``
- Effect nodes (email, tags) run between a claim write and an outcome write
- Failed effects back off with the workflow's retry policy

Every write is a versioned read-modify-write. A version conflict discards
the computed transition, re-reads the row and tries again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from automation_engine.collaborators.base import (
    EmailSender,
    ExternalServiceError,
    FailureNotifier,
    SubscriberProvider,
    TagStore,
)
from automation_engine.core.conditions import evaluate_condition
from automation_engine.core.models import (
    DISPATCH_KEY,
    RETRY_KEY,
    AddTagNode,
    NodeCategory,
    RemoveTagNode,
    SendEmailNode,
    TriggerNode,
    WaitNode,
    Workflow,
    WorkflowExecution,
    utcnow,
)
from automation_engine.core.state_machine import ExecutionStateMachine, ExecutionStatus
from automation_engine.storage.base import (
    AutomationStore,
    ConcurrencyConflictError,
    ExecutionNotFoundError,
)
from automation_engine.template.variables import VariableRenderer

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Result of a single step."""

    execution: WorkflowExecution
    progressed: bool


def idempotency_key(execution_id: UUID, node_id: str, attempt: int) -> str:
    return f"{execution_id}:{node_id}:{attempt}"


class ExecutionEngine:
    """
    Drives executions forward.

    Safe to run from many workers at once: every transition is guarded by
    the execution's version, and external effects are claimed before they
    run so that only one worker performs a given attempt.
    """

    def __init__(
        self,
        store: AutomationStore,
        email_sender: EmailSender,
        tag_store: TagStore,
        subscribers: SubscriberProvider,
        notifier: FailureNotifier,
        renderer: Optional[VariableRenderer] = None,
        clock: Callable[[], datetime] = utcnow,
        max_conflict_retries: int = 5,
        claim_timeout: float = 300.0,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.email_sender = email_sender
        self.tag_store = tag_store
        self.subscribers = subscribers
        self.notifier = notifier
        self.renderer = renderer or VariableRenderer(clock=clock)
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries
        self.claim_timeout = timedelta(seconds=claim_timeout)
        self.worker_id = worker_id or f"engine-{uuid4().hex[:8]}"

    # ==================== Public API ====================

    async def step(self, execution_id: UUID) -> StepOutcome:
        """
        Perform exactly one transition (or none if nothing is due).

        Raises:
            ExecutionNotFoundError: If the execution does not exist
        """
        execution: Optional[WorkflowExecution] = None
        for attempt in range(1, self.max_conflict_retries + 1):
            execution = await self.store.get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            try:
                return await self._advance(execution)
            except ConcurrencyConflictError:
                logger.warning(
                    f"Version conflict on execution {execution_id} "
                    f"(attempt {attempt}/{self.max_conflict_retries}), re-reading"
                )

        logger.warning(f"Execution {execution_id} kept conflicting, leaving it for the next pass")
        return StepOutcome(execution, False)

    async def run(self, execution_id: UUID) -> WorkflowExecution:
        """
        Step until the execution is no longer RUNNING or stops progressing.

        Bounded by the graph size times the retry budget, so a corrupted
        definition can never spin forever.
        """
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)

        workflow = await self.store.get_workflow(execution.workflow_id)
        if workflow is None:
            budget = 2
        else:
            budget = (len(workflow.graph.nodes) + 1) * (workflow.retry.max_attempts + 2)

        for _ in range(budget):
            outcome = await self.step(execution_id)
            execution = outcome.execution
            if not outcome.progressed or execution.status != ExecutionStatus.RUNNING:
                return execution

        logger.warning(f"Execution {execution_id} exhausted its step budget ({budget})")
        return execution

    async def cancel(self, execution_id: UUID, reason: str = "cancelled") -> WorkflowExecution:
        """
        Cancel a non-terminal execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            InvalidStateTransitionError: If it already finished
        """
        for _ in range(self.max_conflict_retries):
            execution = await self.store.get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            updated = execution.model_copy(deep=True)
            updated.wake_at = None
            updated.completed_at = self.clock()
            updated.context.pop(DISPATCH_KEY, None)
            try:
                saved = await self._commit(
                    execution,
                    updated,
                    ExecutionStatus.CANCELLED,
                    reason=reason,
                )
            except ConcurrencyConflictError:
                continue

            logger.info(f"Execution {execution_id} cancelled: {reason}")
            return saved

        raise ConcurrencyConflictError(execution_id, execution.version)

    # ==================== Transitions ====================

    async def _advance(self, execution: WorkflowExecution) -> StepOutcome:
        if execution.is_terminal:
            return StepOutcome(execution, False)

        now = self.clock()
        if execution.status == ExecutionStatus.WAITING and not execution.is_due(now):
            return StepOutcome(execution, False)

        workflow = await self.store.get_workflow(execution.workflow_id)
        if workflow is None:
            return await self._fail(execution, None, f"Workflow {execution.workflow_id} no longer exists")

        node = workflow.graph.get_node(execution.current_node_id) if execution.current_node_id else None
        if node is None:
            return await self._fail(
                execution,
                workflow,
                f"Node '{execution.current_node_id}' is not part of workflow {workflow.id}",
            )

        if execution.status == ExecutionStatus.WAITING:
            return await self._wake(execution, workflow, node)

        if isinstance(node, TriggerNode):
            return await self._follow_edge(execution, workflow, node.id, reason="trigger fired")

        if isinstance(node, WaitNode):
            return await self._suspend(execution, node)

        if node.category == NodeCategory.CONDITION:
            return await self._evaluate(execution, workflow, node)

        return await self._dispatch_effect(execution, workflow, node)

    async def _wake(self, execution: WorkflowExecution, workflow: Workflow, node: Any) -> StepOutcome:
        retry = execution.retry_state
        if retry and retry.get("node_id") == node.id and not isinstance(node, WaitNode):
            updated = execution.model_copy(deep=True)
            updated.wake_at = None
            updated.last_error = None
            saved = await self._commit(
                execution,
                updated,
                ExecutionStatus.RUNNING,
                reason=f"retrying node after backoff (attempt {retry.get('attempts', 0) + 1})",
                node_id=node.id,
            )
            return StepOutcome(saved, True)

        return await self._follow_edge(execution, workflow, node.id, reason="wait elapsed")

    async def _suspend(self, execution: WorkflowExecution, node: WaitNode) -> StepOutcome:
        updated = execution.model_copy(deep=True)
        updated.wake_at = self.clock() + node.duration
        saved = await self._commit(
            execution,
            updated,
            ExecutionStatus.WAITING,
            reason=f"waiting {node.delay} {node.unit.value}",
            node_id=node.id,
            wake_at=updated.wake_at.isoformat(),
        )
        logger.info(f"Execution {execution.id} waiting at node {node.id} until {updated.wake_at.isoformat()}")
        return StepOutcome(saved, True)

    async def _evaluate(self, execution: WorkflowExecution, workflow: Workflow, node: Any) -> StepOutcome:
        try:
            subscriber = await self.subscribers.get_subscriber(
                execution.publication_id,
                execution.subscriber_id,
            )
        except ExternalServiceError as e:
            attempt = self._current_attempt(execution, node.id)
            updated, status, reason = self._apply_failure(execution, workflow, node.id, e, attempt)
            saved = await self._commit(execution, updated, status, reason=reason, node_id=node.id)
            if status == ExecutionStatus.FAILED:
                await self._notify_failure(workflow, saved)
            return StepOutcome(saved, True)

        branch = evaluate_condition(node, subscriber)
        next_node_id = workflow.graph.next_node_id(node.id, branch)

        updated = execution.model_copy(deep=True)
        updated.context["subscriber"] = subscriber.as_context()
        updated, status = self._position(updated, next_node_id)
        saved = await self._commit(
            execution,
            updated,
            status,
            reason=f"condition evaluated {str(branch).lower()}",
            node_id=node.id,
            branch=str(branch).lower(),
        )
        return StepOutcome(saved, True)

    async def _follow_edge(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        node_id: str,
        reason: str,
    ) -> StepOutcome:
        updated, status = self._position(
            execution.model_copy(deep=True),
            workflow.graph.next_node_id(node_id),
        )
        saved = await self._commit(execution, updated, status, reason=reason, node_id=node_id)
        if status == ExecutionStatus.COMPLETED:
            logger.info(f"Execution {execution.id} completed")
        return StepOutcome(saved, True)

    # ==================== External Effects ====================

    async def _dispatch_effect(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        node: Any,
    ) -> StepOutcome:
        """
        Claim, perform and record one attempt of an effect node.

        A fresh claim by another worker makes this a no-op. A claim older
        than the claim timeout is treated as abandoned and re-claimed with
        the same idempotency key.
        """
        now = self.clock()
        attempt = self._current_attempt(execution, node.id)

        claim = execution.dispatch_claim
        if claim and claim.get("node_id") == node.id:
            claimed_at = datetime.fromisoformat(claim["claimed_at"])
            if now - claimed_at < self.claim_timeout:
                logger.debug(f"Node {node.id} of execution {execution.id} is in flight elsewhere")
                return StepOutcome(execution, False)
            attempt = claim.get("attempt", attempt)
            logger.warning(
                f"Claim on node {node.id} of execution {execution.id} by "
                f"{claim.get('worker_id')} is stale, re-claiming"
            )

        key = idempotency_key(execution.id, node.id, attempt)
        token = uuid4().hex

        claimed = execution.model_copy(deep=True)
        claimed.context[DISPATCH_KEY] = {
            "node_id": node.id,
            "attempt": attempt,
            "idempotency_key": key,
            "claimed_at": now.isoformat(),
            "worker_id": self.worker_id,
            "token": token,
        }
        # Conflict here propagates to step(): nothing has been performed yet
        claimed = await self._commit(
            execution,
            claimed,
            ExecutionStatus.RUNNING,
            reason=f"dispatching {node.type} (attempt {attempt})",
            node_id=node.id,
            idempotency_key=key,
        )

        error: Optional[ExternalServiceError] = None
        try:
            await self._perform(claimed, node, key)
        except ExternalServiceError as e:
            error = e
            logger.warning(
                f"{node.type} failed for execution {execution.id} at node {node.id} "
                f"(attempt {attempt}, retryable={e.retryable}): {e}"
            )

        return await self._record_outcome(claimed, workflow, node, token, attempt, error)

    async def _perform(self, execution: WorkflowExecution, node: Any, key: str) -> None:
        if isinstance(node, SendEmailNode):
            subscriber = await self.subscribers.get_subscriber(
                execution.publication_id,
                execution.subscriber_id,
            )
            if not subscriber.email:
                raise ExternalServiceError(
                    f"Subscriber {subscriber.id} has no email address",
                    service="email",
                    retryable=False,
                )

            context = {**execution.context, "subscriber": subscriber.as_context()}
            now = self.clock()
            subject = self.renderer.render(node.subject, context, now)
            html = self.renderer.render(node.content, context, now)
            await self.email_sender.send(subscriber.email, subject, html, key)
            return

        if isinstance(node, (AddTagNode, RemoveTagNode)):
            operation = self.tag_store.add_tag if isinstance(node, AddTagNode) else self.tag_store.remove_tag
            for tag in node.tags:
                try:
                    await operation(execution.subscriber_id, tag)
                except ExternalServiceError:
                    raise
                except Exception as e:
                    raise ExternalServiceError(
                        f"Tag update '{tag}' failed: {e}",
                        service="tags",
                        retryable=True,
                    ) from e
            return

        raise ExternalServiceError(f"Unsupported node type '{node.type}'", retryable=False)

    async def _record_outcome(
        self,
        claimed: WorkflowExecution,
        workflow: Workflow,
        node: Any,
        token: str,
        attempt: int,
        error: Optional[ExternalServiceError],
    ) -> StepOutcome:
        """Write the outcome of an attempt while our claim is still in place."""
        current = claimed
        for _ in range(self.max_conflict_retries):
            if error is None:
                updated, status = self._position(
                    current.model_copy(deep=True),
                    workflow.graph.next_node_id(node.id),
                )
                reason = f"{node.type} succeeded"
            else:
                updated, status, reason = self._apply_failure(current, workflow, node.id, error, attempt)

            try:
                saved = await self._commit(current, updated, status, reason=reason, node_id=node.id)
            except ConcurrencyConflictError:
                current = await self.store.get_execution(claimed.id)
                claim = (current.dispatch_claim or {}) if current else {}
                if current is None or current.is_terminal or claim.get("token") != token:
                    logger.warning(
                        f"Lost claim on node {node.id} of execution {claimed.id} before recording outcome"
                    )
                    return StepOutcome(current or claimed, False)
                continue

            if status == ExecutionStatus.FAILED:
                await self._notify_failure(workflow, saved)
            elif status == ExecutionStatus.COMPLETED:
                logger.info(f"Execution {saved.id} completed")
            return StepOutcome(saved, True)

        return StepOutcome(current, False)

    # ==================== Helpers ====================

    def _position(
        self,
        execution: WorkflowExecution,
        next_node_id: Optional[str],
    ) -> tuple[WorkflowExecution, ExecutionStatus]:
        """Move to the next node, or complete if there is none. Mutates and returns the copy."""
        execution.context.pop(RETRY_KEY, None)
        execution.context.pop(DISPATCH_KEY, None)
        execution.wake_at = None
        execution.last_error = None

        if next_node_id is None:
            execution.completed_at = self.clock()
            return execution, ExecutionStatus.COMPLETED

        execution.current_node_id = next_node_id
        return execution, ExecutionStatus.RUNNING

    def _current_attempt(self, execution: WorkflowExecution, node_id: str) -> int:
        retry = execution.retry_state
        if retry and retry.get("node_id") == node_id:
            return int(retry.get("attempts", 0)) + 1
        return 1

    def _apply_failure(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        node_id: str,
        error: ExternalServiceError,
        attempt: int,
    ) -> tuple[WorkflowExecution, ExecutionStatus, str]:
        """Back off and wait, or fail once attempts are exhausted."""
        now = self.clock()
        message = str(error)

        updated = execution.model_copy(deep=True)
        updated.context.pop(DISPATCH_KEY, None)
        updated.context[RETRY_KEY] = {
            "node_id": node_id,
            "attempts": attempt,
            "last_error": message,
        }
        updated.last_error = message

        if not error.retryable or attempt >= workflow.retry.max_attempts:
            updated.wake_at = None
            updated.completed_at = now
            reason = (
                f"failed permanently: {message}" if not error.retryable
                else f"failed after {attempt} attempts: {message}"
            )
            return updated, ExecutionStatus.FAILED, reason

        updated.wake_at = now + workflow.retry.backoff(attempt)
        return updated, ExecutionStatus.WAITING, f"retry {attempt} scheduled at {updated.wake_at.isoformat()}"

    async def _fail(
        self,
        execution: WorkflowExecution,
        workflow: Optional[Workflow],
        message: str,
    ) -> StepOutcome:
        updated = execution.model_copy(deep=True)
        updated.last_error = message
        updated.wake_at = None
        updated.completed_at = self.clock()
        updated.context.pop(DISPATCH_KEY, None)
        saved = await self._commit(execution, updated, ExecutionStatus.FAILED, reason=message)
        logger.error(f"Execution {execution.id} failed: {message}")
        if workflow is not None:
            await self._notify_failure(workflow, saved)
        return StepOutcome(saved, True)

    async def _commit(
        self,
        before: WorkflowExecution,
        after: WorkflowExecution,
        to_status: ExecutionStatus,
        reason: str,
        **details: Any,
    ) -> WorkflowExecution:
        """
        Validate the transition and persist it against the version we read.

        Raises:
            InvalidStateTransitionError: If the status change is not allowed
            ConcurrencyConflictError: If the row changed since it was read
        """
        machine = ExecutionStateMachine(before.status)
        transition = machine.transition(
            to_status,
            reason=reason,
            triggered_by=self.worker_id,
            metadata={k: v for k, v in details.items() if v is not None},
        )

        after.status = to_status
        after.updated_at = self.clock()
        return await self.store.save_execution(after, before.version, transition)

    async def _notify_failure(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        try:
            await self.notifier.notify_failure(workflow, execution)
        except Exception as e:
            logger.error(f"Failed to notify owner about execution {execution.id}: {e}", exc_info=True)

