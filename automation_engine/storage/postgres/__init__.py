"""PostgreSQL storage layer."""

from automation_engine.storage.postgres.database import Database
from automation_engine.storage.postgres.models import (
    AutomationWorkflowModel,
    Base,
    ExecutionStepModel,
    WorkflowExecutionModel,
)
from automation_engine.storage.postgres.repository import AutomationRepository
from automation_engine.storage.postgres.store import PostgresStore

__all__ = [
    "Base",
    "AutomationWorkflowModel",
    "WorkflowExecutionModel",
    "ExecutionStepModel",
    "AutomationRepository",
    "Database",
    "PostgresStore",
]
