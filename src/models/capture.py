from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class CaptureOutcome(Enum):
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


@dataclass
class CaptureRecord:
    record_id: str
    job_id: str
    order_id: str
    transaction_id: str
    outcome: CaptureOutcome
    timestamp: datetime
    elapsed_ms: float
    error: str | None = None
