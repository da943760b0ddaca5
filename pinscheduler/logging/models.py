"""Job event log models: LogLevel, JobEventType, JobEvent."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Log levels with numeric values for severity comparison.

    Integer values keep comparisons correct ("debug" > "critical"
    lexicographically).
    """

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        """Get lowercase name for display/serialization."""
        return self.name.lower()


class JobEventType(Enum):
    """Everything that can happen to a scheduled pin."""

    CREATED = "created"
    UPDATED = "updated"
    CLAIMED = "claimed"
    POSTED = "posted"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    DELETED = "deleted"
    RECOVERED = "recovered"
    POSTED_AFTER_CANCEL = "posted_after_cancel"
    DEBIT_FAILED = "debit_failed"
    RECURRENCE_SPAWNED = "recurrence_spawned"
    METRICS_REFRESHED = "metrics_refreshed"


@dataclass
class JobEvent:
    """One structured audit record for a job transition."""

    timestamp: datetime
    level: LogLevel
    event: JobEventType
    job_id: str

    owner: Optional[str] = None
    status: Optional[str] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for file and Supabase output."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "event": self.event.value,
            "job_id": self.job_id,
            "owner": self.owner,
            "status": self.status,
            "message": self.message,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """Human-readable single line for console output."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        msg = f"[{self.level.name}] [{time_str}] {self.event.value} job={self.job_id}"
        if self.status:
            msg += f" status={self.status}"
        if self.message:
            msg += f" | {self.message}"
        return msg
