"""Worker processes for event consumption and scheduling."""

from automation_engine.workers.runner import AutomationWorker, run_worker

__all__ = ["AutomationWorker", "run_worker"]
