"""Scheduler package for periodic maintenance jobs."""

from matchday.scheduler.service import SchedulerService

__all__ = ["SchedulerService"]
