"""
Trigger matcher.

Turns a domain event into new executions of every active workflow whose
trigger matches it.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from automation_engine.collaborators.base import ExternalServiceError, SubscriberProvider
from automation_engine.core.models import (
    DISPATCH_KEY,
    RETRY_KEY,
    DomainEvent,
    SubscriberSnapshot,
    WorkflowExecution,
    utcnow,
)
from automation_engine.core.state_machine import ExecutionStatus
from automation_engine.core.triggers import trigger_matches
from automation_engine.storage.base import AutomationStore

logger = logging.getLogger(__name__)


def build_context(
    event: DomainEvent,
    subscriber: SubscriberSnapshot,
    publication: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Initial execution context.

    ``event.data`` is merged at the top level (e.g. ``post``, ``course``);
    engine keys are applied last and win over event data.
    """
    data = {k: v for k, v in event.data.items() if k not in (RETRY_KEY, DISPATCH_KEY)}

    publication_context = dict(data.get("publication") or {})
    publication_context.update({k: v for k, v in (publication or {}).items() if v is not None})
    publication_context.setdefault("id", event.publication_id)

    return {
        **data,
        "event": {
            "id": event.event_id,
            "kind": event.kind.value,
            "occurred_at": event.occurred_at.isoformat(),
            "target_id": event.target_id,
            "tag_name": event.tag_name,
            "from_tier": event.from_tier,
            "to_tier": event.to_tier,
            "form_id": event.form_id,
        },
        "subscriber": subscriber.as_context(),
        "publication": publication_context,
    }


class TriggerMatcher:
    """
    Starts executions for matching workflows.

    Idempotent per (workflow, event): replaying an event creates nothing new.
    """

    def __init__(
        self,
        store: AutomationStore,
        subscribers: SubscriberProvider,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.subscribers = subscribers
        self.clock = clock

    async def handle_event(self, event: DomainEvent) -> list[WorkflowExecution]:
        """
        Match an event and create executions.

        Returns:
            Executions created by this call (duplicates are skipped)

        Raises:
            ExternalServiceError: If subscriber lookup fails transiently
        """
        workflows = await self.store.find_active_workflows(event.publication_id, event.kind)
        matched = []
        for workflow in workflows:
            if not trigger_matches(workflow.trigger, event):
                continue
            if workflow.graph.trigger_node is None:
                logger.warning(f"Active workflow {workflow.id} has no trigger node, skipping")
                continue
            matched.append(workflow)

        if not matched:
            logger.debug(f"Event {event.event_id} ({event.kind.value}) matched no workflows")
            return []

        subscriber = await self._load_subscriber(event)
        publication = await self._load_publication(event)
        context = build_context(event, subscriber, publication)

        created = []
        now = self.clock()
        for workflow in matched:
            execution = WorkflowExecution(
                workflow_id=workflow.id,
                publication_id=event.publication_id,
                subscriber_id=event.subscriber_id,
                event_id=event.event_id,
                status=ExecutionStatus.RUNNING,
                current_node_id=workflow.graph.trigger_node.id,
                context=context,
                created_at=now,
                updated_at=now,
            )

            stored = await self.store.create_execution(execution)
            if stored is None:
                logger.info(
                    f"Event {event.event_id} already started workflow {workflow.id}, skipping"
                )
                continue

            logger.info(
                f"Execution {stored.id} created for workflow {workflow.id} "
                f"(subscriber={event.subscriber_id}, event={event.event_id})"
            )
            created.append(stored)

        return created

    async def _load_subscriber(self, event: DomainEvent) -> SubscriberSnapshot:
        """Permanent lookup failures (e.g. subscriber already deleted) fall back to the id only."""
        try:
            return await self.subscribers.get_subscriber(event.publication_id, event.subscriber_id)
        except ExternalServiceError as e:
            if e.retryable:
                raise
            logger.warning(
                f"Subscriber {event.subscriber_id} lookup failed permanently, "
                f"starting with an empty snapshot: {e}"
            )
            return SubscriberSnapshot(id=event.subscriber_id)

    async def _load_publication(self, event: DomainEvent) -> dict[str, Any]:
        try:
            return await self.subscribers.get_publication(event.publication_id)
        except ExternalServiceError as e:
            if e.retryable:
                raise
            logger.warning(f"Publication {event.publication_id} lookup failed permanently: {e}")
            return {"id": event.publication_id}
