"""models.py
============
Record types for surplus auctions and the bids placed on them.

Records are plain dataclasses.  ``to_doc`` / ``from_doc`` translate them to the
JSON-compatible bodies kept by the document store: decimals travel as strings
and timestamps as ISO-8601 UTC strings so that every replica stores identical
bytes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Tuple

from surplus_auctions.errors import ValidationError

__all__ = [
    "AUCTIONS", "BIDS", "ALLOWED_DURATIONS", "MAX_IMAGES", "MIN_INCREMENT",
    "Condition", "SaleReason", "AuctionStatus", "UserProfile", "AuctionSpec",
    "Auction", "Bid", "to_decimal", "utcnow", "parse_time", "format_time",
]

AUCTIONS = "auctions"
BIDS = "bids"

ALLOWED_DURATIONS = (1, 3, 7, 10, 14)   # whole days
MAX_IMAGES = 5
MIN_INCREMENT = Decimal("1")


class Condition(str, Enum):
    NEW = "new"
    LIKE_NEW = "like-new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class SaleReason(str, Enum):
    SURPLUS = "surplus"
    OVERSTOCK = "overstock"
    DISCONTINUED = "discontinued"
    DAMAGED = "damaged"
    RETURNED = "returned"
    OTHER = "other"


class AuctionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


###############################################################################
# Value helpers
###############################################################################

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_time(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def parse_time(value) -> datetime:
    """Accept a ``datetime`` or ISO string; naive values are taken as UTC."""
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}") from None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def to_decimal(value, what: str = "amount") -> Decimal:
    """Coerce *value* to a finite :class:`Decimal` or raise ``ValidationError``.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal('0.1')``.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{what} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        d = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{what} must be a number, got {value!r}") from None
    if not d.is_finite():
        raise ValidationError(f"{what} must be finite")
    return d


def _opt_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


###############################################################################
# Records
###############################################################################

@dataclass(frozen=True)
class UserProfile:
    """Identity handed to the core by the user collaborator."""

    user_id: str
    display_name: str = ""
    company_name: str = ""
    email: str = ""
    has_completed_company_profile: bool = False


@dataclass
class AuctionSpec:
    """Seller input for a new auction, as submitted by the listing form."""

    title: str
    description: str
    category: str
    starting_price: object
    quantity: int = 1
    condition: object = Condition.GOOD
    reason: object = SaleReason.SURPLUS
    buy_now_price: object = None
    duration_days: int = 7
    images: Tuple[str, ...] = ()


@dataclass
class Auction:
    id: str
    title: str
    description: str
    category: str
    condition: Condition
    reason: SaleReason
    quantity: int
    starting_price: Decimal
    buy_now_price: Optional[Decimal]
    current_bid: Decimal
    status: AuctionStatus
    seller_id: str
    seller_name: str
    seller_company: str
    seller_email: str
    start_time: datetime
    end_time: datetime
    images: List[str] = field(default_factory=list)
    views: int = 0
    watchers: List[str] = field(default_factory=list)
    bid_count: int = 0
    winning_bid_id: Optional[str] = None
    version: int = 0

    def to_doc(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "condition": self.condition.value,
            "reason": self.reason.value,
            "quantity": self.quantity,
            "startingPrice": str(self.starting_price),
            "buyNowPrice": None if self.buy_now_price is None else str(self.buy_now_price),
            "currentBid": str(self.current_bid),
            "status": self.status.value,
            "sellerId": self.seller_id,
            "sellerName": self.seller_name,
            "sellerCompany": self.seller_company,
            "sellerEmail": self.seller_email,
            "startTime": format_time(self.start_time),
            "endTime": format_time(self.end_time),
            "images": list(self.images),
            "views": self.views,
            "watchers": list(self.watchers),
            "bidCount": self.bid_count,
            "winningBidId": self.winning_bid_id,
        }

    @classmethod
    def from_doc(cls, doc_id: str, body: dict, version: int = 0) -> "Auction":
        return cls(
            id=doc_id,
            title=body["title"],
            description=body["description"],
            category=body["category"],
            condition=Condition(body["condition"]),
            reason=SaleReason(body["reason"]),
            quantity=body["quantity"],
            starting_price=Decimal(body["startingPrice"]),
            buy_now_price=_opt_decimal(body.get("buyNowPrice")),
            current_bid=Decimal(body["currentBid"]),
            status=AuctionStatus(body["status"]),
            seller_id=body["sellerId"],
            seller_name=body.get("sellerName", ""),
            seller_company=body.get("sellerCompany", ""),
            seller_email=body.get("sellerEmail", ""),
            start_time=parse_time(body["startTime"]),
            end_time=parse_time(body["endTime"]),
            images=list(body.get("images", [])),
            views=body.get("views", 0),
            watchers=list(body.get("watchers", [])),
            bid_count=body.get("bidCount", 0),
            winning_bid_id=body.get("winningBidId"),
            version=version,
        )


@dataclass(frozen=True)
class Bid:
    """One accepted bid.  Only ``is_winning`` ever changes after acceptance.

    ``seq`` is the 1-based acceptance order within the auction and breaks
    ties between equal amounts (earlier wins).
    """

    id: str
    auction_id: str
    amount: Decimal
    bidder_id: str
    bidder_name: str
    bidder_company: str
    bidder_email: str
    timestamp: datetime
    seq: int
    is_winning: bool = True
    version: int = 0

    def to_doc(self) -> dict:
        return {
            "auctionId": self.auction_id,
            "amount": str(self.amount),
            "bidderId": self.bidder_id,
            "bidderName": self.bidder_name,
            "bidderCompany": self.bidder_company,
            "bidderEmail": self.bidder_email,
            "timestamp": format_time(self.timestamp),
            "seq": self.seq,
            "isWinning": self.is_winning,
        }

    @classmethod
    def from_doc(cls, doc_id: str, body: dict, version: int = 0) -> "Bid":
        return cls(
            id=doc_id,
            auction_id=body["auctionId"],
            amount=Decimal(body["amount"]),
            bidder_id=body["bidderId"],
            bidder_name=body.get("bidderName", ""),
            bidder_company=body.get("bidderCompany", ""),
            bidder_email=body.get("bidderEmail", ""),
            timestamp=parse_time(body["timestamp"]),
            seq=body["seq"],
            is_winning=bool(body["isWinning"]),
            version=version,
        )
