from src.errors import PlatformError


class RetryPolicy:
    """Decides whether a failed capture is retried and how long to wait first."""

    DEFAULT_SCHEDULE = [30, 300, 1800]  # 30s, 5m, 30m

    def __init__(self, schedule: list[float] | None = None, max_retries: int = 0):
        self.schedule = schedule or self.DEFAULT_SCHEDULE
        self.max_retries = max_retries

    def should_retry(self, error: Exception) -> bool:
        """Determine if a capture error is worth another attempt.

        Returns True for timeouts and generic remote errors.
        Returns False for permission problems, already captured
        authorizations, missing orders and anything that did not come
        from the platform.
        """
        if isinstance(error, PlatformError):
            return error.retryable
        return False

    def next_delay(self, retry: int) -> float:
        """Get the delay in seconds before the next retry (0-indexed)."""
        if retry >= len(self.schedule):
            return float(self.schedule[-1])
        return float(self.schedule[retry])

    def has_attempts_remaining(self, retry: int) -> bool:
        return retry < self.max_retries
