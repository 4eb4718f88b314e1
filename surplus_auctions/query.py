"""query.py
============
In-memory filtering, sorting and summary figures over an already fetched set
of auctions.  Everything here is pure; no store access.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List

from surplus_auctions.errors import ValidationError
from surplus_auctions.models import Auction

SORT_KEYS = ("endTime", "currentBid", "startingPrice")


@dataclass(frozen=True)
class AuctionFilter:
    """Catalog filter; empty strings mean "no filter" for that field."""

    search_text: str = ""
    category: str = ""
    condition: str = ""
    reason: str = ""
    sort_key: str = "endTime"


@dataclass(frozen=True)
class CatalogStats:
    active_count: int
    with_bids_count: int
    total_value: Decimal


def _matches(auction: Auction, f: AuctionFilter) -> bool:
    if f.search_text:
        needle = f.search_text.lower()
        haystacks = (auction.title, auction.description, auction.seller_company)
        if not any(needle in (h or "").lower() for h in haystacks):
            return False
    if f.category and auction.category != f.category:
        return False
    if f.condition and auction.condition.value != f.condition:
        return False
    if f.reason and auction.reason.value != f.reason:
        return False
    return True


def filter_auctions(auctions: Iterable[Auction], f: AuctionFilter) -> List[Auction]:
    """Matching auctions, sorted by ``f.sort_key``.

    ``endTime`` sorts soonest-ending first; ``currentBid`` and
    ``startingPrice`` sort highest first.  Ties keep input order.
    """
    if f.sort_key not in SORT_KEYS:
        raise ValidationError(f"sort key must be one of: {', '.join(SORT_KEYS)}")
    matched = [a for a in auctions if _matches(a, f)]
    if f.sort_key == "endTime":
        matched.sort(key=lambda a: a.end_time)
    elif f.sort_key == "currentBid":
        matched.sort(key=lambda a: a.current_bid, reverse=True)
    else:
        matched.sort(key=lambda a: a.starting_price, reverse=True)
    return matched


def catalog_stats(auctions: Iterable[Auction]) -> CatalogStats:
    auctions = list(auctions)
    return CatalogStats(
        active_count=len(auctions),
        with_bids_count=sum(1 for a in auctions if a.bid_count > 0),
        total_value=sum((a.current_bid for a in auctions), Decimal(0)),
    )
