"""Data access layer: repositories over the orchestration tables."""

from matchday.dal.executions import ExecutionRepository, merge_status
from matchday.dal.traces import TraceRepository
from matchday.dal.used_topics import UsedTopicRepository

__all__ = [
    "ExecutionRepository",
    "TraceRepository",
    "UsedTopicRepository",
    "merge_status",
]
