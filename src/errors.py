class CaptureServiceError(Exception):
    """Base class for all errors raised by the capture service."""


class ConfigError(CaptureServiceError):
    pass


class ValidationError(CaptureServiceError):
    """Rejected input at schedule time; no job was created."""


class NoAuthorizedTransaction(CaptureServiceError):
    def __init__(self, order_id: str):
        super().__init__(f"No authorized transaction found for order {order_id}")
        self.order_id = order_id


class CaptureFailure(CaptureServiceError):
    """A capture attempt returned an error or timed out."""

    def __init__(self, order_id: str, transaction_id: str, cause: Exception):
        super().__init__(
            f"Capture failed for order {order_id} (transaction {transaction_id}): {cause}"
        )
        self.order_id = order_id
        self.transaction_id = transaction_id
        self.cause = cause


class PlatformError(CaptureServiceError):
    """An error returned by the commerce platform API."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PermissionDenied(PlatformError):
    pass


class NotFound(PlatformError):
    pass


class AlreadyCaptured(PlatformError):
    pass


class NetworkTimeout(PlatformError):
    retryable = True


class RemoteError(PlatformError):
    retryable = True
