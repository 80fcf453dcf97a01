"""
Exception taxonomy for the copy trading engine

Transient errors are retried with backoff; everything else is terminal for
the trade or trader it was raised for.
"""

from typing import Optional


class CopyTradingError(Exception):
    """Base class for all engine errors"""


class ConfigInvalid(CopyTradingError):
    """Thresholds or caps out of their valid range"""


class InsufficientData(CopyTradingError):
    """Too little history to compute a metric"""


class TransientError(CopyTradingError):
    """Failure that may succeed if retried"""


class FeedUnavailable(TransientError):
    """Trade feed could not be reached or returned garbage"""


class RateLimited(TransientError):
    """Upstream asked us to slow down"""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ExecutionTimeout(TransientError):
    """Order submission did not complete in time"""


class ExecutionError(CopyTradingError):
    """Order refused by the venue, never retried"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class Rejected(ExecutionError):
    """Venue rejected the order"""


class InvalidOrder(ExecutionError):
    """Order parameters are not acceptable"""


class InsufficientLiquidity(ExecutionError):
    """Not enough liquidity on the book to fill"""


class PersistenceError(CopyTradingError):
    """Storage write or read failed"""
