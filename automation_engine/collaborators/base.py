"""
Interfaces for the external services the engine depends on.

The engine only talks to these abstractions; concrete HTTP and stream
implementations live next to this module.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from automation_engine.core.models import SubscriberSnapshot, Workflow, WorkflowExecution


class ExternalServiceError(Exception):
    """
    Raised when a collaborator call fails.

    ``retryable`` separates transient failures (timeouts, 5xx, rate limits)
    from permanent ones (bad request, missing recipient).
    """

    def __init__(
        self,
        message: str,
        service: str = "external",
        retryable: bool = True,
        status_code: Optional[int] = None,
    ):
        self.service = service
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


def raise_for_response(response: httpx.Response, service: str) -> None:
    """
    Translate an HTTP error response into ExternalServiceError.

    429 and 5xx are retryable; other 4xx are not.
    """
    if response.is_success:
        return

    status = response.status_code
    detail = response.text[:500]
    retryable = status == 429 or status >= 500
    raise ExternalServiceError(
        f"{service} responded {status}: {detail}",
        service=service,
        retryable=retryable,
        status_code=status,
    )


def wrap_transport_error(exc: httpx.HTTPError, service: str) -> ExternalServiceError:
    """Network level failures are always retryable."""
    return ExternalServiceError(
        f"{service} request failed: {exc.__class__.__name__}: {exc}",
        service=service,
        retryable=True,
    )


class EmailSender(ABC):
    """Delivers rendered emails."""

    @abstractmethod
    async def send(self, to: str, subject: str, html: str, idempotency_key: str) -> None:
        """
        Send one email.

        Raises:
            ExternalServiceError: If delivery failed
        """
        pass


class TagStore(ABC):
    """Mutates subscriber tags."""

    @abstractmethod
    async def add_tag(self, subscriber_id: str, tag: str) -> None:
        pass

    @abstractmethod
    async def remove_tag(self, subscriber_id: str, tag: str) -> None:
        pass


class SubscriberProvider(ABC):
    """Reads current subscriber and publication state."""

    @abstractmethod
    async def get_subscriber(self, publication_id: str, subscriber_id: str) -> SubscriberSnapshot:
        pass

    async def get_publication(self, publication_id: str) -> dict[str, Any]:
        """Publication info merged into the execution context."""
        return {"id": publication_id}


class FailureNotifier(ABC):
    """Tells the publication owner that an execution failed."""

    @abstractmethod
    async def notify_failure(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        pass
