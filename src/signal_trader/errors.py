"""Error taxonomy for the trading pipeline."""

from __future__ import annotations


class SignalTraderError(Exception):
    """Base pipeline error."""


class InsufficientData(SignalTraderError):
    """Raised when an indicator or stage has not finished warming up."""


class FeedDiscontinuity(SignalTraderError):
    """Raised when consecutive candles are further apart than one interval allows."""

    def __init__(self, previous_at: object, current_at: object, gap_seconds: float) -> None:
        super().__init__(f"feed_gap: {gap_seconds:.1f}s between {previous_at} and {current_at}")
        self.previous_at = previous_at
        self.current_at = current_at
        self.gap_seconds = gap_seconds


class SizingRejected(SignalTraderError):
    """Raised when a sizing decision violates margin or lot-size constraints."""

    def __init__(self, reason: str, **context: float) -> None:
        super().__init__(reason)
        self.reason = reason
        self.context = context


class OrderPlacementError(SignalTraderError):
    """Raised by an order gateway when a single placement attempt fails."""


class ExecutionFailed(SignalTraderError):
    """Raised when order placement keeps failing after all retries."""

    def __init__(self, action: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"execution_failed[{action}]{detail}")
        self.action = action
        self.cause = cause
