import threading
from collections import deque

from src.models.capture import CaptureOutcome, CaptureRecord

DEFAULT_MAX_RECORDS = 1000


class CaptureLogger:
    """Thread-safe log of the most recent capture attempt outcomes."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS):
        self._records: deque[CaptureRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def log(self, record: CaptureRecord) -> None:
        with self._lock:
            self._records.append(record)

    def get_records(self, order_id: str | None = None) -> list[CaptureRecord]:
        with self._lock:
            if order_id is None:
                return list(self._records)
            return [r for r in self._records if r.order_id == order_id]

    def get_captured(self) -> list[CaptureRecord]:
        with self._lock:
            return [r for r in self._records if r.outcome is CaptureOutcome.CAPTURED]

    def get_failed(self) -> list[CaptureRecord]:
        with self._lock:
            return [r for r in self._records if r.outcome is CaptureOutcome.FAILED]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
