from .job import JobState, JobSummary, ScheduledCaptureJob, LIVE_STATES
from .capture import CaptureOutcome, CaptureRecord
from .order import PaymentIntent, ProcessingResult, Transaction

__all__ = [
    "JobState", "JobSummary", "ScheduledCaptureJob", "LIVE_STATES",
    "CaptureOutcome", "CaptureRecord",
    "PaymentIntent", "ProcessingResult", "Transaction",
]
