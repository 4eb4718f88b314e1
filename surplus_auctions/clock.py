"""clock.py
============
Auction lifecycle as a pure function of stored fields and a caller-supplied
``now``.  Nothing here reads the wall clock: callers take one ``now`` snapshot
per request and pass it everywhere so all parts of a response agree.  A naive
``now`` is read as UTC, like stored timestamps.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Tuple, Union

from surplus_auctions.models import Auction, AuctionStatus, parse_time

__all__ = ["ENDED", "LifecycleState", "remaining_time", "lifecycle_state",
           "is_open", "has_ended", "format_time_remaining"]


class _Ended:
    """Sentinel returned by :func:`remaining_time` once the end time has passed."""

    def __repr__(self):
        return "ENDED"


ENDED = _Ended()


class LifecycleState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


def remaining_time(auction: Auction, now: datetime) -> Union[timedelta, _Ended]:
    now = parse_time(now)
    if now > auction.end_time:
        return ENDED
    return auction.end_time - now


def lifecycle_state(auction: Auction, now: datetime) -> LifecycleState:
    """OPEN iff status is active and ``now <= end_time``; CLOSED otherwise."""
    now = parse_time(now)
    if auction.status is AuctionStatus.ACTIVE and now <= auction.end_time:
        return LifecycleState.OPEN
    return LifecycleState.CLOSED


def is_open(auction: Auction, now: datetime) -> bool:
    return lifecycle_state(auction, now) is LifecycleState.OPEN


def has_ended(auction: Auction, now: datetime) -> bool:
    """True once ``now`` is past the end time, whatever the stored status."""
    return remaining_time(auction, now) is ENDED


def format_time_remaining(auction: Auction, now: datetime) -> Tuple[str, bool]:
    """Countdown label and an urgency flag for display.

    >= 1 day: ``"2d 5h"`` (not urgent); >= 1 hour: ``"3h 12m"`` (urgent under
    6 hours); otherwise ``"42m"`` (urgent).
    """
    left = remaining_time(auction, now)
    if left is ENDED or left <= timedelta(0):
        return "Auction ended", True

    days = left.days
    hours, rest = divmod(left.seconds, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{days}d {hours}h", False
    if hours > 0:
        return f"{hours}h {minutes}m", hours < 6
    return f"{minutes}m", True
