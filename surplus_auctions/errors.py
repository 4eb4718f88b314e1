"""errors.py
============
Typed failures raised by the auction core.

Every operation either returns its result or raises one of the classes below;
transport layers translate them to their own status codes by ``kind``.
"""


class AuctionError(Exception):
    """Base class for every failure surfaced by the auction core."""

    retryable = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(AuctionError):
    """Malformed or missing input; the caller should correct and resubmit."""


class NotFound(AuctionError):
    """The referenced auction or bid does not exist."""


class AuctionClosed(AuctionError):
    """Bid attempted on an auction whose bidding window is over."""


class SelfBidForbidden(AuctionError):
    """A seller tried to bid on their own lot."""


class BidTooLow(AuctionError):
    """Bid below the current minimum acceptable amount."""

    def __init__(self, amount=None, minimum=None, message=None):
        super().__init__(message or f"Bid must be at least {minimum} (got {amount})")
        self.amount = amount
        self.minimum = minimum


class AuthorizationError(AuctionError):
    """Ownership check failed."""


class ConcurrencyConflict(AuctionError):
    """Optimistic-concurrency retries exhausted; resubmit with fresh data."""

    retryable = True


class StoreUnavailable(AuctionError):
    """The document store failed or timed out; the whole operation may be retried."""

    retryable = True


ERRORS_BY_KIND = {
    cls.__name__: cls
    for cls in (
        ValidationError,
        NotFound,
        AuctionClosed,
        SelfBidForbidden,
        BidTooLow,
        AuthorizationError,
        ConcurrencyConflict,
        StoreUnavailable,
    )
}
