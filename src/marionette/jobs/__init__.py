"""Job queue and scheduling."""

from marionette.jobs.queue import (
    CANNOT_CANCEL,
    CANNOT_RETRY,
    JobOutcome,
    JobQueue,
    is_retryable,
)

__all__ = ["CANNOT_CANCEL", "CANNOT_RETRY", "JobOutcome", "JobQueue", "is_retryable"]
