"""Rolling-window counters for capture attempts, keyed by outcome."""

import threading
import time
from collections import deque

from src.models.capture import CaptureOutcome


class MetricsCollector:
    """Counts capture attempts per outcome over a rolling window.

    A RETRYING or FAILED outcome is a failed attempt. Only FAILED is terminal.
    """

    def __init__(self, window_seconds: float = 3600):
        self._window_seconds = window_seconds
        # (monotonic timestamp, outcome, elapsed_ms), oldest first
        self._attempts: deque[tuple[float, CaptureOutcome, float]] = deque()
        self._lock = threading.Lock()

    def record(self, outcome: CaptureOutcome, elapsed_ms: float = 0.0) -> None:
        with self._lock:
            now = time.monotonic()
            self._attempts.append((now, outcome, elapsed_ms))
            self._evict(now)

    def _evict(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._attempts and self._attempts[0][0] < cutoff:
            self._attempts.popleft()

    def _window(self) -> list[tuple[float, CaptureOutcome, float]]:
        with self._lock:
            self._evict(time.monotonic())
            return list(self._attempts)

    def count(self, outcome: CaptureOutcome) -> int:
        return sum(1 for _, o, _ in self._window() if o is outcome)

    def total_in_window(self) -> int:
        return len(self._window())

    def failure_count_in_window(self) -> int:
        return sum(1 for _, o, _ in self._window() if o is not CaptureOutcome.CAPTURED)

    def failure_rate(self) -> float:
        """Share of capture attempts in the window that failed (0.0 to 1.0)."""
        attempts = self._window()
        if not attempts:
            return 0.0
        failed = sum(1 for _, o, _ in attempts if o is not CaptureOutcome.CAPTURED)
        return failed / len(attempts)

    def snapshot(self) -> dict:
        attempts = self._window()
        counts = {outcome: 0 for outcome in CaptureOutcome}
        for _, outcome, _ in attempts:
            counts[outcome] += 1
        total = len(attempts)
        failed = total - counts[CaptureOutcome.CAPTURED]
        return {
            "windowSeconds": self._window_seconds,
            "attempts": total,
            "captured": counts[CaptureOutcome.CAPTURED],
            "retried": counts[CaptureOutcome.RETRYING],
            "failed": counts[CaptureOutcome.FAILED],
            "failureRate": failed / total if total else 0.0,
            "avgCaptureMs": sum(ms for _, _, ms in attempts) / total if total else 0.0,
        }

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()
