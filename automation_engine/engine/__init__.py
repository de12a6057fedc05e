"""Execution engine, trigger matching, scheduling and the service facade."""

from automation_engine.engine.executor import ExecutionEngine, StepOutcome, idempotency_key
from automation_engine.engine.matcher import TriggerMatcher, build_context
from automation_engine.engine.scheduler import ResumptionScheduler
from automation_engine.engine.service import (
    AutomationService,
    PublicationDashboard,
    TemplatePreview,
    WorkflowStats,
)

__all__ = [
    "ExecutionEngine",
    "StepOutcome",
    "idempotency_key",
    "TriggerMatcher",
    "build_context",
    "ResumptionScheduler",
    "AutomationService",
    "PublicationDashboard",
    "TemplatePreview",
    "WorkflowStats",
]
