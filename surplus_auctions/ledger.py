"""ledger.py
=============
Bid placement and bid history.

An auction is *Open* while its status is active and ``now <= end_time``; bids
are only accepted while it is open.  Accepting a bid is one atomic commit of
three writes:

1. a merge of ``currentBid``/``winningBidId``/``bidCount`` into the auction
   record, pinned to the version that was read,
2. the new bid (``isWinning = True``),
3. the previous winner flipped to ``isWinning = False``.

View counts and watchers are patched without a version bump, so only another
bid or an owner write can invalidate the read.  If one landed in between, the
commit is rejected and the whole check (open? self-bid? minimum?) is redone
against the fresh record.  After ``max_retries`` lost races the caller gets
``ConcurrencyConflict``.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from surplus_auctions import clock
from surplus_auctions.auctions import AuctionStore
from surplus_auctions.db import Write
from surplus_auctions.errors import (
    AuctionClosed, BidTooLow, ConcurrencyConflict, SelfBidForbidden, ValidationError,
)
from surplus_auctions.models import (
    AUCTIONS, BIDS, MIN_INCREMENT, Auction, Bid, UserProfile, parse_time, to_decimal,
    utcnow,
)

log = logging.getLogger(__name__)


def minimum_acceptable(auction: Auction) -> Decimal:
    """Starting price for the first bid, then current bid plus one unit."""
    if auction.bid_count == 0:
        return auction.starting_price
    return auction.current_bid + MIN_INCREMENT


class BidLedger:
    """Append-only bid history that keeps the auction's current bid in step.

    Parameters
    ----------
    auctions
        :class:`~surplus_auctions.auctions.AuctionStore` used to load auctions.
    max_retries
        Optimistic-concurrency attempts before ``ConcurrencyConflict``.
    """

    def __init__(self, auctions: AuctionStore, max_retries: int = 5):
        self.auctions = auctions
        self.store = auctions.store
        self.max_retries = max_retries

    def place_bid(self, auction_id: str, bidder: UserProfile, amount,
                  now: Optional[datetime] = None) -> Bid:
        if not bidder.has_completed_company_profile:
            raise ValidationError("Please complete your business profile before bidding.")
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Bid amount must be greater than 0.")
        now = utcnow() if now is None else parse_time(now)

        for attempt in range(1, self.max_retries + 1):
            auction = self.auctions.get_auction(auction_id)
            if not clock.is_open(auction, now):
                raise AuctionClosed(f"Auction {auction_id} is closed for bidding")
            if bidder.user_id == auction.seller_id:
                raise SelfBidForbidden("You cannot bid on your own auction")
            minimum = minimum_acceptable(auction)
            if amount < minimum:
                raise BidTooLow(amount, minimum)

            bid = Bid(
                id=uuid.uuid4().hex,
                auction_id=auction_id,
                amount=amount,
                bidder_id=bidder.user_id,
                bidder_name=bidder.display_name,
                bidder_company=bidder.company_name,
                bidder_email=bidder.email,
                timestamp=now,
                seq=auction.bid_count + 1,
                is_winning=True,
            )
            writes = [Write.create(BIDS, bid.id, bid.to_doc())]

            previous = auction.winning_bid_id and self.store.get(BIDS, auction.winning_bid_id)
            if previous:
                body = dict(previous.body, isWinning=False)
                writes.append(Write.update(BIDS, previous.id, body,
                                           expected_version=previous.version))

            writes.insert(0, Write.merge(AUCTIONS, auction_id, {
                "currentBid": str(amount),
                "winningBidId": bid.id,
                "bidCount": auction.bid_count + 1,
            }, expected_version=auction.version))

            if self.store.commit(writes):
                log.info("bid %s on auction %s accepted: %s by %s",
                         bid.id, auction_id, amount, bidder.user_id)
                return bid
            log.debug("bid on auction %s lost a race (attempt %d/%d)",
                      auction_id, attempt, self.max_retries)

        raise ConcurrencyConflict(
            f"Auction {auction_id} is receiving many bids right now; please try again")

    def list_bids(self, auction_id: str) -> List[Bid]:
        """Bid history for an auction, newest first."""
        self.auctions.get_auction(auction_id)
        bids = [Bid.from_doc(d.id, d.body, d.version)
                for d in self.store.list_where(BIDS, auctionId=auction_id)]
        return sorted(bids, key=lambda b: b.seq, reverse=True)

    def winning_bid(self, auction_id: str) -> Optional[Bid]:
        """The current winner, or ``None`` while the auction has no bids."""
        auction = self.auctions.get_auction(auction_id)
        if not auction.winning_bid_id:
            return None
        doc = self.store.get(BIDS, auction.winning_bid_id)
        return Bid.from_doc(doc.id, doc.body, doc.version) if doc else None

    def derive_state(self, auction_id: str) -> Tuple[Decimal, Optional[Bid]]:
        """Re-derive ``(current_bid, winner)`` from the bid history alone."""
        auction = self.auctions.get_auction(auction_id)
        winner = highest_bid(self.list_bids(auction_id))
        if winner is None:
            return auction.starting_price, None
        return winner.amount, winner


def highest_bid(bids: List[Bid]) -> Optional[Bid]:
    """Highest amount wins; equal amounts go to the earlier bid."""
    if not bids:
        return None
    return min(bids, key=lambda b: (-b.amount, b.seq))
