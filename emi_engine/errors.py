"""Exception hierarchy for the EMI engine.

Every error is a value handed back to the caller; none of them is meant to
stop the process. ``retryable`` tells the caller whether re-reading and
re-applying the same request can succeed.
"""


class EmiEngineError(Exception):
    """Base exception for all EMI engine errors."""

    retryable = False


class InvalidInput(EmiEngineError, ValueError):
    """Raised when calculator or operation arguments are out of range."""


class NotFoundError(EmiEngineError, LookupError):
    """Raised when a referenced record does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan id does not resolve to a stored loan."""


class LendingNotFoundError(NotFoundError):
    """Raised when a lending id does not resolve to a stored lending."""


class ScheduleNotFoundError(NotFoundError):
    """Raised when a loan has no schedule rows but one is required."""


class ScheduleExistsError(EmiEngineError):
    """Raised when generating a schedule for a loan that already has one."""


class OverpaymentExceedsOutstanding(EmiEngineError):
    """Raised when a loan payment or prepayment exceeds what is still owed."""


class OverpaymentExceedsPending(EmiEngineError):
    """Raised when a lending payment would push the pending amount below zero."""


class ConcurrentModificationError(EmiEngineError):
    """Raised on lock contention or a stale read of a loan or lending."""

    retryable = True
