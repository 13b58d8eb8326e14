from .scheduler import DeferredCaptureScheduler
from .retry import RetryPolicy
from .logger import CaptureLogger

__all__ = [
    "DeferredCaptureScheduler",
    "RetryPolicy",
    "CaptureLogger",
]
