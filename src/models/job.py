from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class JobState(Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


LIVE_STATES = frozenset({JobState.PENDING, JobState.EXECUTING})


@dataclass
class ScheduledCaptureJob:
    job_id: str
    order_id: str
    transaction_id: str
    due_at: datetime
    created_at: datetime
    state: JobState = JobState.PENDING
    attempts: int = 0

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES


@dataclass
class JobSummary:
    job_id: str
    order_id: str
    due_at: datetime
    time_remaining: float  # seconds, never negative
    state: JobState = JobState.PENDING

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "orderId": self.order_id,
            "dueAt": self.due_at.isoformat(),
            "timeRemaining": self.time_remaining,
            "state": self.state.value,
        }
