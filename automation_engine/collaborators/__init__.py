"""External services consumed by the engine."""

from automation_engine.collaborators.base import (
    EmailSender,
    ExternalServiceError,
    FailureNotifier,
    SubscriberProvider,
    TagStore,
)
from automation_engine.collaborators.email import (
    LoggingEmailSender,
    ResendEmailSender,
    build_email_sender,
)
from automation_engine.collaborators.notifications import (
    LoggingFailureNotifier,
    StreamFailureNotifier,
)
from automation_engine.collaborators.platform import PlatformClient

__all__ = [
    "EmailSender",
    "ExternalServiceError",
    "FailureNotifier",
    "SubscriberProvider",
    "TagStore",
    "LoggingEmailSender",
    "ResendEmailSender",
    "build_email_sender",
    "LoggingFailureNotifier",
    "StreamFailureNotifier",
    "PlatformClient",
]
