"""Surplus-inventory auctions: auction records, bid ledger, watchers and catalog queries."""
from surplus_auctions.auctions import AuctionStore
from surplus_auctions.db import DocumentStore
from surplus_auctions.ledger import BidLedger
from surplus_auctions.models import Auction, AuctionSpec, Bid, UserProfile
from surplus_auctions.query import AuctionFilter, catalog_stats, filter_auctions
from surplus_auctions.watchers import WatchRegistry

__all__ = [
    "Auction", "AuctionFilter", "AuctionSpec", "AuctionStore", "Bid", "BidLedger",
    "DocumentStore", "UserProfile", "WatchRegistry", "catalog_stats", "filter_auctions",
]
