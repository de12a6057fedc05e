"""Storage layer for workflows and executions."""

from automation_engine.storage.base import (
    AutomationStore,
    ConcurrencyConflictError,
    ExecutionNotFoundError,
    ExecutionStore,
    PersistenceError,
    StoreError,
    WorkflowNotFoundError,
    WorkflowStore,
)
from automation_engine.storage.memory import InMemoryStore

__all__ = [
    "AutomationStore",
    "ConcurrencyConflictError",
    "ExecutionNotFoundError",
    "ExecutionStore",
    "PersistenceError",
    "StoreError",
    "WorkflowNotFoundError",
    "WorkflowStore",
    "InMemoryStore",
]
