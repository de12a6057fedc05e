"""Failure notices to publication owners."""

import logging

from automation_engine.collaborators.base import FailureNotifier
from automation_engine.core.models import Workflow, WorkflowExecution
from automation_engine.messaging.streams import NotificationStream

logger = logging.getLogger(__name__)


class StreamFailureNotifier(FailureNotifier):
    """Publishes failure notices to the notification stream."""

    def __init__(self, stream: NotificationStream):
        self.stream = stream

    async def notify_failure(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        message_id = await self.stream.publish_failure(workflow, execution)
        logger.info(
            f"Failure notice {message_id} queued for publication {workflow.publication_id} "
            f"(execution {execution.id})"
        )


class LoggingFailureNotifier(FailureNotifier):
    """Logs failures when no notification stream is wired in."""

    async def notify_failure(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        logger.error(
            f"Execution {execution.id} of workflow '{workflow.name}' ({workflow.id}) failed "
            f"at node {execution.current_node_id}: {execution.last_error}"
        )
