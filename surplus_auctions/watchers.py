"""Watch registry: the set of users tracking an auction without bidding."""
import logging
from datetime import datetime
from typing import List, Optional

from surplus_auctions import clock
from surplus_auctions.db import ArrayRemove, ArrayUnion
from surplus_auctions.errors import AuctionClosed, NotFound
from surplus_auctions.models import AUCTIONS, Auction, parse_time, utcnow

log = logging.getLogger(__name__)


class WatchRegistry:
    """Idempotent add/remove on the ``watchers`` field of an auction record.

    Both calls are set transforms applied by the store, so they never clobber
    a concurrent bid's fields.  Once an auction is past its end time the set
    is frozen and both raise ``AuctionClosed``.
    """

    def __init__(self, store):
        self.store = store

    def _load(self, auction_id) -> Auction:
        doc = self.store.get(AUCTIONS, auction_id)
        if doc is None:
            raise NotFound(f"Auction {auction_id} not found")
        return Auction.from_doc(doc.id, doc.body, doc.version)

    def _update(self, auction_id, change, now):
        now = utcnow() if now is None else parse_time(now)
        if clock.has_ended(self._load(auction_id), now):
            raise AuctionClosed(f"Auction {auction_id} has ended")
        if not self.store.patch(AUCTIONS, auction_id, {"watchers": change}):
            raise NotFound(f"Auction {auction_id} not found")

    def watch(self, auction_id: str, user_id: str, now: Optional[datetime] = None) -> None:
        self._update(auction_id, ArrayUnion(user_id), now)
        log.debug("%s watching auction %s", user_id, auction_id)

    def unwatch(self, auction_id: str, user_id: str, now: Optional[datetime] = None) -> None:
        self._update(auction_id, ArrayRemove(user_id), now)
        log.debug("%s stopped watching auction %s", user_id, auction_id)

    def watchers(self, auction_id: str) -> List[str]:
        return list(self._load(auction_id).watchers)

    def is_watching(self, auction_id: str, user_id: str) -> bool:
        return user_id in self.watchers(auction_id)
