# checkgate/internal/errors.py

"""
Error taxonomy for the collection and aggregation pipeline.
"""


class CheckGateError(Exception):
    """Base class for all pipeline errors"""


class ValidationError(CheckGateError, ValueError):
    """
    A malformed snapshot or a bad query range.
    Surfaced to the caller and never persisted.
    """


class InsufficientDataError(CheckGateError):
    """Raised when a statistic needs more samples than the store holds."""

    def __init__(self, message: str, sample_count: int = 0):
        super().__init__(message)
        self.sample_count = sample_count


class StoreError(CheckGateError):
    """
    Transient storage failure (connection loss, I/O error, timeout).
    Writes are retried a bounded number of times before the cycle is reported as lost.
    """
