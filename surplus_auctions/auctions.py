"""auctions.py
===============
Auction records and their coarse lifecycle (active -> ended).

:class:`AuctionStore` validates seller input, denormalises the seller's
identity onto the record and keeps per-auction counters.  It only talks to a
document store (``DocumentStore`` or ``RaftDocumentStore``); bid placement
lives in :mod:`surplus_auctions.ledger`.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from surplus_auctions import clock
from surplus_auctions.db import Increment, Write
from surplus_auctions.errors import (
    AuctionError, AuthorizationError, ConcurrencyConflict, NotFound, ValidationError,
)
from surplus_auctions.models import (
    ALLOWED_DURATIONS, AUCTIONS, BIDS, MAX_IMAGES, Auction, AuctionSpec,
    AuctionStatus, Condition, SaleReason, UserProfile, parse_time, to_decimal, utcnow,
)

log = logging.getLogger(__name__)


def _coerce_enum(enum_cls, value, what):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{what} must be one of: {allowed}") from None


def validate_spec(seller: UserProfile, spec: AuctionSpec):
    """Check seller eligibility and normalise the form input.

    Returns a dict of cleaned fields; raises ``ValidationError`` on the first
    problem found.
    """
    if not seller.has_completed_company_profile:
        raise ValidationError("Please complete your business profile before creating auctions.")

    title = (spec.title or "").strip()
    description = (spec.description or "").strip()
    category = (spec.category or "").strip()
    if not title or not description or not category:
        raise ValidationError("Please fill in all required fields.")

    starting_price = to_decimal(spec.starting_price, "starting price")
    if starting_price <= 0:
        raise ValidationError("Starting price must be greater than 0.")

    buy_now_price = None
    if spec.buy_now_price not in (None, ""):
        buy_now_price = to_decimal(spec.buy_now_price, "buy-now price")
        if buy_now_price <= starting_price:
            raise ValidationError("Buy-now price must exceed the starting price.")

    if isinstance(spec.quantity, bool) or not isinstance(spec.quantity, int) or spec.quantity < 1:
        raise ValidationError("Quantity must be a whole number of at least 1.")

    if (isinstance(spec.duration_days, bool) or not isinstance(spec.duration_days, int)
            or spec.duration_days not in ALLOWED_DURATIONS):
        raise ValidationError(
            f"Auction duration must be one of {', '.join(map(str, ALLOWED_DURATIONS))} days.")

    images = list(spec.images or ())
    if len(images) > MAX_IMAGES:
        raise ValidationError(f"Maximum {MAX_IMAGES} images allowed")

    return {
        "title": title,
        "description": description,
        "category": category,
        "condition": _coerce_enum(Condition, spec.condition, "condition"),
        "reason": _coerce_enum(SaleReason, spec.reason, "reason"),
        "quantity": spec.quantity,
        "starting_price": starting_price,
        "buy_now_price": buy_now_price,
        "images": images,
    }


class AuctionStore:
    """Durable auction records on top of a document store.

    Parameters
    ----------
    store
        Any object with the :class:`~surplus_auctions.db.DocumentStore` API.
    max_retries
        Attempts for owner writes that race with bids before giving up.
    """

    def __init__(self, store, max_retries=5):
        self.store = store
        self.max_retries = max_retries

    def create_auction(self, seller: UserProfile, spec: AuctionSpec,
                       now: Optional[datetime] = None) -> str:
        """Validate *spec*, persist a new active auction and return its id."""
        fields = validate_spec(seller, spec)
        now = utcnow() if now is None else parse_time(now)
        auction = Auction(
            id=uuid.uuid4().hex,
            current_bid=fields["starting_price"],
            status=AuctionStatus.ACTIVE,
            seller_id=seller.user_id,
            seller_name=seller.display_name,
            seller_company=seller.company_name,
            seller_email=seller.email,
            start_time=now,
            end_time=now + timedelta(days=spec.duration_days),
            **fields,
        )
        if not self.store.create(AUCTIONS, auction.id, auction.to_doc()):
            raise ConcurrencyConflict(f"auction id {auction.id} already taken")
        log.info("auction %s created by %s (%s, start %s)",
                 auction.id, seller.user_id, auction.title, auction.starting_price)
        return auction.id

    def get_auction(self, auction_id: str) -> Auction:
        doc = self.store.get(AUCTIONS, auction_id)
        if doc is None:
            raise NotFound(f"Auction {auction_id} not found")
        return Auction.from_doc(doc.id, doc.body, doc.version)

    def list_active_auctions(self, now: Optional[datetime] = None) -> List[Auction]:
        """Auctions whose stored status is ``active``.

        The status is not flipped when time runs out, so when *now* is given
        auctions already closed by the clock are dropped as well.
        """
        auctions = [Auction.from_doc(d.id, d.body, d.version)
                    for d in self.store.list_where(AUCTIONS, status=AuctionStatus.ACTIVE.value)]
        if now is not None:
            now = parse_time(now)
            auctions = [a for a in auctions if clock.is_open(a, now)]
        return auctions

    def list_seller_auctions(self, seller_id: str) -> List[Auction]:
        """Every auction created by *seller_id*, any status."""
        return [Auction.from_doc(d.id, d.body, d.version)
                for d in self.store.list_where(AUCTIONS, sellerId=seller_id)]

    def increment_views(self, auction_id: str, now: Optional[datetime] = None) -> None:
        """Best-effort view counter bump; failures are logged and dropped.

        Views after the end time are not counted; the record is read-only by then.
        """
        now = utcnow() if now is None else parse_time(now)
        try:
            if clock.has_ended(self.get_auction(auction_id), now):
                log.debug("view on ended auction %s not counted", auction_id)
                return
            if not self.store.patch(AUCTIONS, auction_id, {"views": Increment(1)}):
                log.warning("view count not recorded: auction %s not found", auction_id)
        except AuctionError as e:
            log.warning("view count not recorded for %s: %s", auction_id, e)

    def close_auction(self, auction_id: str, requester_id: str) -> Auction:
        """Owner sets the auction to ``ended``; a no-op if already ended."""
        for _ in range(self.max_retries):
            auction = self.get_auction(auction_id)
            if auction.seller_id != requester_id:
                raise AuthorizationError("Only the seller may close this auction")
            if auction.status is AuctionStatus.ENDED:
                return auction
            if self.store.commit([Write.merge(AUCTIONS, auction_id,
                                              {"status": AuctionStatus.ENDED.value},
                                              expected_version=auction.version)]):
                log.info("auction %s closed by seller", auction_id)
                return self.get_auction(auction_id)
        raise ConcurrencyConflict(f"auction {auction_id} kept changing; try again")

    def delete_auction(self, auction_id: str, requester_id: str) -> int:
        """Delete the auction and cascade to its bids in one commit.

        Returns the number of bids removed with it.
        """
        for _ in range(self.max_retries):
            auction = self.get_auction(auction_id)
            if auction.seller_id != requester_id:
                raise AuthorizationError("Only the seller may delete this auction")
            bids = self.store.list_where(BIDS, auctionId=auction_id)
            writes = [Write.delete(AUCTIONS, auction_id, expected_version=auction.version)]
            writes += [Write.delete(BIDS, b.id) for b in bids]
            if self.store.commit(writes):
                log.info("auction %s deleted with %d bid(s)", auction_id, len(bids))
                return len(bids)
        raise ConcurrencyConflict(f"auction {auction_id} kept changing; try again")
