import csv
from datetime import timedelta

import pytest

from conftest import T0
from surplus_auctions.client_grpc import AuctionClient
from surplus_auctions.errors import (
    AuctionClosed, AuthorizationError, BidTooLow, NotFound, SelfBidForbidden,
    StoreUnavailable, ValidationError,
)

SELLER = {"userId": "sam", "displayName": "Sam", "companyName": "Sam Supply Co",
          "email": "sam@example.com", "hasCompletedCompanyProfile": True}
ALICE = dict(SELLER, userId="alice", displayName="Alice", companyName="Alice Ltd")
BOB = dict(SELLER, userId="bob", displayName="Bob", companyName="Bob GmbH")


def _create(client, **fields):
    payload = dict(title="Forklift", description="Electric, 2t", category="Machinery",
                   startingPrice="100", auctionDuration=1)
    payload.update(fields)
    return client.create_auction(SELLER, **payload)


def test_create_get_and_bid_roundtrip(grpc_env):
    client, _, _ = grpc_env
    aid = _create(client, quantity=2, condition="fair", reason="returned")

    view = client.get_auction(aid)
    assert view["title"] == "Forklift" and view["quantity"] == 2
    assert view["isOpen"] is True and view["timeRemaining"] == "1d 0h"
    assert view["minimumBid"] == "100"

    client.place_bid(aid, ALICE, 100)
    with pytest.raises(BidTooLow):
        client.place_bid(aid, BOB, 100)
    bid = client.place_bid(aid, BOB, "150")
    assert bid["amount"] == "150" and bid["isWinning"] is True

    view = client.get_auction(aid)
    assert view["currentBid"] == "150" and view["minimumBid"] == "151"
    assert view["bidCount"] == 2
    bids = client.list_bids(aid)
    assert [(b["bidderId"], b["isWinning"]) for b in bids] == [("bob", True), ("alice", False)]


def test_typed_errors_cross_the_wire(grpc_env):
    client, clock_box, _ = grpc_env
    aid = _create(client)

    with pytest.raises(ValidationError):
        client.create_auction(dict(SELLER, hasCompletedCompanyProfile=False),
                              title="x", description="y", category="z", startingPrice="5")
    with pytest.raises(ValidationError):
        client.place_bid(aid, ALICE, "not-a-number")
    with pytest.raises(ValidationError):
        _create(client, quantity=1.5)
    with pytest.raises(SelfBidForbidden):
        client.place_bid(aid, SELLER, 500)
    with pytest.raises(NotFound):
        client.get_auction("missing")
    with pytest.raises(AuthorizationError):
        client.delete_auction(aid, "alice")

    clock_box["now"] = T0 + timedelta(days=2)
    with pytest.raises(AuctionClosed):
        client.place_bid(aid, ALICE, 1000)
    assert client.get_auction(aid)["timeRemaining"] == "Auction ended"


@pytest.mark.parametrize("method, payload", [
    ("CreateAuction", dict(seller="sam", title="Forklift", description="d", category="c",
                           startingPrice="100")),
    ("CreateAuction", dict(seller=SELLER, title=5, description="d", category="c",
                           startingPrice="100")),
    ("CreateAuction", dict(seller=SELLER, title="t", description="d", category="c",
                           startingPrice={"value": 100})),
    ("CreateAuction", dict(seller=SELLER, title="t", description="d", category="c",
                           startingPrice="100", images=[1, 2])),
    ("CreateAuction", dict(seller=dict(SELLER, companyName=["x"]), title="t",
                           description="d", category="c", startingPrice="100")),
    ("ListActiveAuctions", dict(searchText=3)),
    ("ListActiveAuctions", dict(sortKey=["endTime"])),
    ("GetAuction", dict(auctionId=7)),
    ("PlaceBid", dict(auctionId="x", bidder="alice", amount="100")),
    ("PlaceBid", dict(auctionId="x", bidder=ALICE, amount={"n": 1})),
    ("Watch", dict(auctionId="x", userId=["alice"])),
])
def test_malformed_payloads_are_validation_errors(grpc_env, method, payload):
    client, _, _ = grpc_env
    with pytest.raises(ValidationError):
        client.call(method, **payload)


def test_watchers_and_views_freeze_after_end_time(grpc_env):
    client, clock_box, _ = grpc_env
    aid = _create(client)
    client.watch(aid, "alice")
    client.increment_views(aid)

    clock_box["now"] = T0 + timedelta(days=2)
    with pytest.raises(AuctionClosed):
        client.watch(aid, "bob")
    with pytest.raises(AuctionClosed):
        client.unwatch(aid, "alice")
    client.increment_views(aid)
    view = client.get_auction(aid)
    assert view["watchers"] == ["alice"] and view["views"] == 1


def test_catalog_listing_filters_and_stats(grpc_env):
    client, _, _ = grpc_env
    a = _create(client, title="Pallet jack", startingPrice="40", auctionDuration=3)
    b = _create(client, title="Forklift", startingPrice="900", auctionDuration=7)
    _create(client, title="Desk lamps", category="Office Supplies", startingPrice="10")
    client.place_bid(a, ALICE, 60)

    result = client.list_active_auctions(category="Machinery", sortKey="currentBid")
    assert [x["id"] for x in result["auctions"]] == [b, a]
    assert result["stats"] == {"activeCount": 3, "withBidsCount": 1, "totalValue": "970"}

    result = client.list_active_auctions(searchText="LAMP")
    assert [x["title"] for x in result["auctions"]] == ["Desk lamps"]
    assert len(client.list_seller_auctions("sam")) == 3


def test_watch_views_close_and_delete(grpc_env):
    client, _, settings = grpc_env
    aid = _create(client)

    client.watch(aid, "alice")
    client.watch(aid, "alice")
    client.increment_views(aid)
    client.increment_views("missing")
    view = client.get_auction(aid)
    assert view["watchers"] == ["alice"] and view["views"] == 1
    client.unwatch(aid, "alice")
    assert client.get_auction(aid)["watchers"] == []

    client.place_bid(aid, BOB, 100)
    closed = client.close_auction(aid, "sam")
    assert closed["status"] == "ended" and closed["isOpen"] is False
    assert client.list_active_auctions()["auctions"] == []
    assert client.delete_auction(aid, "sam") == {"deletedBids": 1}

    with open(settings.usage_log) as f:
        rows = list(csv.DictReader(f))
    assert rows and {"CreateAuction", "Watch", "DeleteAuction"} <= {r["method"] for r in rows}


def test_client_fails_over_and_gives_up_when_every_server_is_down():
    client = AuctionClient(["127.0.0.1:1", "127.0.0.1:2"], max_retries=2,
                           retry_delay=0.0, timeout=0.5)
    try:
        with pytest.raises(StoreUnavailable):
            client.get_auction("anything")
        assert client.idx == 0
    finally:
        client.close()
