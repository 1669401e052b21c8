"""Timer-driven triggers for the fetch pipeline."""

from .apsched_adapter import APSchedulerAdapter

__all__ = ["APSchedulerAdapter"]
