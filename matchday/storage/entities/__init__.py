"""Database entity models."""

from matchday.storage.entities.execution import TERMINAL_STATUSES, Execution, ExecutionStatus
from matchday.storage.entities.trace import Trace, TraceStatus
from matchday.storage.entities.used_topic import UsedTopic

__all__ = [
    "TERMINAL_STATUSES",
    "Execution",
    "ExecutionStatus",
    "Trace",
    "TraceStatus",
    "UsedTopic",
]
