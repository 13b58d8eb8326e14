import logging

from src.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class AlertManager:
    """Fires an alert when the capture failure rate crosses a threshold."""

    def __init__(
        self,
        metrics: MetricsCollector,
        threshold: float = 0.10,
        min_attempts: int = 1,
        callback=None,
    ):
        self.metrics = metrics
        self.threshold = threshold
        self.min_attempts = min_attempts
        self.callback = callback
        self._fired = False
        self._alerts: list[dict] = []

    def check(self) -> dict | None:
        """Return a new alert dict when the threshold is first exceeded, else None."""
        total = self.metrics.total_in_window()
        if total == 0 or total < self.min_attempts:
            return None

        rate = self.metrics.failure_rate()
        failures = self.metrics.failure_count_in_window()

        if rate <= self.threshold:
            # Back under the threshold, allow the next crossing to fire
            self._fired = False
            return None
        if self._fired:
            return None

        alert = {
            "type": "capture_failure_rate",
            "failure_rate": rate,
            "threshold": self.threshold,
            "total_captures": total,
            "failed_captures": failures,
            "message": (
                f"Capture failure rate {rate:.1%} exceeds "
                f"threshold {self.threshold:.1%} "
                f"({failures}/{total} capture attempts failed)"
            ),
        }
        self._fired = True
        self._alerts.append(alert)
        logger.warning(alert["message"])

        if self.callback:
            self.callback(alert)
        return alert

    def get_alerts(self) -> list[dict]:
        return list(self._alerts)

    def reset(self) -> None:
        self._fired = False
        self._alerts.clear()
