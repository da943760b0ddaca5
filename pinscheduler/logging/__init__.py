"""Job event logging for the pin scheduler."""
from pinscheduler.logging.models import LogLevel, JobEventType, JobEvent
from pinscheduler.logging.event_logger import (
    JobEventLogger,
    init_event_logger,
    get_event_logger,
)

__all__ = [
    "LogLevel", "JobEventType", "JobEvent",
    "JobEventLogger", "init_event_logger", "get_event_logger",
]
