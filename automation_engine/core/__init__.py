"""Core domain models and business logic."""

from automation_engine.core.models import (
    DomainEvent,
    Edge,
    RetryConfig,
    SubscriberSnapshot,
    TriggerKind,
    TriggerSpec,
    Workflow,
    WorkflowExecution,
    WorkflowGraph,
)
from automation_engine.core.state_machine import (
    ExecutionStateMachine,
    ExecutionStatus,
    InvalidStateTransitionError,
    WorkflowStatus,
    WorkflowStatusMachine,
)
from automation_engine.core.graph import (
    GraphValidator,
    ValidationResult,
    WorkflowValidationError,
    validate_graph,
)

__all__ = [
    "DomainEvent",
    "Edge",
    "RetryConfig",
    "SubscriberSnapshot",
    "TriggerKind",
    "TriggerSpec",
    "Workflow",
    "WorkflowExecution",
    "WorkflowGraph",
    "ExecutionStateMachine",
    "ExecutionStatus",
    "InvalidStateTransitionError",
    "WorkflowStatus",
    "WorkflowStatusMachine",
    "GraphValidator",
    "ValidationResult",
    "WorkflowValidationError",
    "validate_graph",
]
