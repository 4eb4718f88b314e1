#!/usr/bin/env python3
"""
server_grpc.py

gRPC front end for the surplus-auction core.

Requests and responses are protobuf ``Struct`` messages (``Empty`` when there is
nothing to return) registered through a generic handler, so no generated stubs
are needed.  Amounts travel as decimal strings and timestamps as ISO-8601.

Core failures are mapped to gRPC status codes and the failure kind is sent in
the ``error-kind`` trailing metadata so clients can re-raise the same type.

Run a single node::

    python -m surplus_auctions.server_grpc --port 50051 --db-path auctions.db

or a replicated node (see ``start_cluster``)::

    python -m surplus_auctions.server_grpc --port 50051 --raft-port 50100 \\
        --peers 127.0.0.1:50101,127.0.0.1:50102
"""
import argparse
import logging
import os
import signal
import sys
import threading
from concurrent import futures

import grpc
from google.protobuf import empty_pb2, json_format, struct_pb2

from surplus_auctions import clock
from surplus_auctions.auctions import AuctionStore
from surplus_auctions.config import Settings
from surplus_auctions.db import DocumentStore
from surplus_auctions.errors import AuctionError, ValidationError
from surplus_auctions.ledger import BidLedger, minimum_acceptable
from surplus_auctions.models import AuctionSpec, UserProfile, utcnow
from surplus_auctions.query import AuctionFilter, catalog_stats, filter_auctions
from surplus_auctions.watchers import WatchRegistry

log = logging.getLogger(__name__)

SERVICE_NAME = "surplus_auctions.AuctionService"
ERROR_KIND_KEY = "error-kind"

STATUS_BY_KIND = {
    "ValidationError":     grpc.StatusCode.INVALID_ARGUMENT,
    "NotFound":            grpc.StatusCode.NOT_FOUND,
    "AuctionClosed":       grpc.StatusCode.FAILED_PRECONDITION,
    "SelfBidForbidden":    grpc.StatusCode.PERMISSION_DENIED,
    "BidTooLow":           grpc.StatusCode.OUT_OF_RANGE,
    "AuthorizationError":  grpc.StatusCode.PERMISSION_DENIED,
    "ConcurrencyConflict": grpc.StatusCode.ABORTED,
    "StoreUnavailable":    grpc.StatusCode.UNAVAILABLE,
}

_usage_lock = threading.Lock()


def log_data_usage(path, method_name: str, request, response):
    """
    Append data usage (req_size, resp_size) to a local CSV file, with a header
    if the file does not exist yet.
    """
    with _usage_lock:
        header = "" if os.path.exists(path) else "method,req_size,resp_size\n"
        with open(path, "a") as f:
            f.write(header + f"{method_name},{len(request.SerializeToString())},"
                             f"{len(response.SerializeToString())}\n")


# ---------- payload helpers ---------- #

def _require(payload, key, types=(str,)):
    value = payload.get(key)
    if value is None or value == "":
        raise ValidationError(f"'{key}' is required")
    if not isinstance(value, types):
        raise ValidationError(f"'{key}' has the wrong type")
    return value


def _text(payload, key, default=""):
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string")
    return value


def _object(payload, key):
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{key}' must be an object")
    return value


def _strings(payload, key):
    value = payload.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"'{key}' must be a list of strings")
    return tuple(value)


def _as_int(value, what):
    # Struct numbers arrive as floats
    if isinstance(value, bool):
        raise ValidationError(f"{what} must be a whole number")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{what} must be a whole number")
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{what} must be a whole number") from None


def user_from_payload(payload) -> UserProfile:
    return UserProfile(
        user_id=_require(payload, "userId"),
        display_name=_text(payload, "displayName"),
        company_name=_text(payload, "companyName"),
        email=_text(payload, "email"),
        has_completed_company_profile=payload.get("hasCompletedCompanyProfile") is True,
    )


def spec_from_payload(payload) -> AuctionSpec:
    return AuctionSpec(
        title=_text(payload, "title"),
        description=_text(payload, "description"),
        category=_text(payload, "category"),
        starting_price=payload.get("startingPrice"),
        quantity=_as_int(payload.get("quantity", 1), "quantity"),
        condition=_text(payload, "condition", "good"),
        reason=_text(payload, "reason", "surplus"),
        buy_now_price=payload.get("buyNowPrice"),
        duration_days=_as_int(payload.get("auctionDuration", 7), "auctionDuration"),
        images=_strings(payload, "images"),
    )


def auction_view(auction, now) -> dict:
    """Stored fields plus the lifecycle view computed from one ``now``."""
    label, urgent = clock.format_time_remaining(auction, now)
    left = clock.remaining_time(auction, now)
    view = auction.to_doc()
    view.update(
        id=auction.id,
        isOpen=clock.is_open(auction, now),
        remainingSeconds=0 if left is clock.ENDED else int(left.total_seconds()),
        timeRemaining=label,
        isUrgent=urgent,
        minimumBid=str(minimum_acceptable(auction)),
    )
    return view


def bid_view(bid) -> dict:
    view = bid.to_doc()
    view["id"] = bid.id
    return view


class AuctionService:
    """RPC handlers over the auction core.

    Each handler takes the decoded request dict and returns a response dict, or
    ``None`` for an ``Empty`` reply.
    """

    def __init__(self, store, settings=None, now_fn=utcnow):
        self.settings = settings or Settings()
        self.now_fn = now_fn
        self.auctions = AuctionStore(store, self.settings.bid_retries)
        self.ledger = BidLedger(self.auctions, self.settings.bid_retries)
        self.watch_registry = WatchRegistry(store)

    def CreateAuction(self, req):
        seller = user_from_payload(_object(req, "seller"))
        auction_id = self.auctions.create_auction(seller, spec_from_payload(req), self.now_fn())
        return {"auctionId": auction_id}

    def GetAuction(self, req):
        auction = self.auctions.get_auction(_require(req, "auctionId"))
        return auction_view(auction, self.now_fn())

    def ListActiveAuctions(self, req):
        now = self.now_fn()
        criteria = AuctionFilter(
            search_text=_text(req, "searchText"),
            category=_text(req, "category"),
            condition=_text(req, "condition"),
            reason=_text(req, "reason"),
            sort_key=_text(req, "sortKey") or "endTime",
        )
        active = self.auctions.list_active_auctions(now)
        stats = catalog_stats(active)
        return {
            "auctions": [auction_view(a, now) for a in filter_auctions(active, criteria)],
            "stats": {
                "activeCount": stats.active_count,
                "withBidsCount": stats.with_bids_count,
                "totalValue": str(stats.total_value),
            },
        }

    def ListSellerAuctions(self, req):
        now = self.now_fn()
        auctions = self.auctions.list_seller_auctions(_require(req, "sellerId"))
        return {"auctions": [auction_view(a, now) for a in auctions]}

    def PlaceBid(self, req):
        bidder = user_from_payload(_object(req, "bidder"))
        bid = self.ledger.place_bid(_require(req, "auctionId"), bidder,
                                    _require(req, "amount", (str, int, float)), self.now_fn())
        return bid_view(bid)

    def ListBids(self, req):
        return {"bids": [bid_view(b) for b in self.ledger.list_bids(_require(req, "auctionId"))]}

    def Watch(self, req):
        self.watch_registry.watch(_require(req, "auctionId"), _require(req, "userId"),
                                 self.now_fn())

    def Unwatch(self, req):
        self.watch_registry.unwatch(_require(req, "auctionId"), _require(req, "userId"),
                                   self.now_fn())

    def IncrementViews(self, req):
        self.auctions.increment_views(_require(req, "auctionId"), self.now_fn())

    def DeleteAuction(self, req):
        removed = self.auctions.delete_auction(_require(req, "auctionId"),
                                               _require(req, "requesterId"))
        return {"deletedBids": removed}

    def CloseAuction(self, req):
        auction = self.auctions.close_auction(_require(req, "auctionId"),
                                              _require(req, "requesterId"))
        return auction_view(auction, self.now_fn())

    METHODS = (
        "CreateAuction", "GetAuction", "ListActiveAuctions", "ListSellerAuctions",
        "PlaceBid", "ListBids", "Watch", "Unwatch", "IncrementViews",
        "DeleteAuction", "CloseAuction",
    )

    # ---------- gRPC wiring ---------- #
    def _unary(self, name):
        handler = getattr(self, name)

        def call(request, context):
            try:
                result = handler(json_format.MessageToDict(request))
            except AuctionError as e:
                log.info("%s rejected: %s: %s", name, e.kind, e)
                context.set_trailing_metadata(((ERROR_KIND_KEY, e.kind),))
                context.abort(STATUS_BY_KIND[e.kind], str(e))
            if result is None:
                resp = empty_pb2.Empty()
            else:
                resp = struct_pb2.Struct()
                resp.update(result)
            log_data_usage(self.settings.usage_log, name, request, resp)
            return resp

        return grpc.unary_unary_rpc_method_handler(
            call,
            request_deserializer=struct_pb2.Struct.FromString,
            response_serializer=lambda msg: msg.SerializeToString(),
        )

    def generic_handler(self):
        return grpc.method_handlers_generic_handler(
            SERVICE_NAME, {name: self._unary(name) for name in self.METHODS})


def start_grpc_server(service: AuctionService, port: int, max_workers: int = 10,
                      host: str = "[::]"):
    """
    Register *service* on a new gRPC server and start it.  Returns
    ``(server, bound_port)``; pass ``port=0`` to let the OS pick one.  Stop it
    later with ``server.stop(grace)``.
    """
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    server.add_generic_rpc_handlers((service.generic_handler(),))
    bound = server.add_insecure_port(f"{host}:{port}")
    server.start()
    return server, bound


def build_store(settings, raft_address=None, peers=()):
    """Plain SQLite store, or a Raft-replicated one when *raft_address* is set."""
    if raft_address is None:
        return DocumentStore(settings.db_path)
    from surplus_auctions.raft_db import RaftDocumentStore
    return RaftDocumentStore(raft_address, list(peers), settings.db_path,
                             timeout=settings.raft_timeout)


def main(argv=None):
    p = argparse.ArgumentParser(description="Surplus auction gRPC server")
    p.add_argument("--host",      default="127.0.0.1")
    p.add_argument("--port",      type=int, required=True)
    p.add_argument("--db-path",   default=None, help="overrides AUCTION_DB_PATH")
    p.add_argument("--node-id",   type=int, default=None)
    p.add_argument("--raft-port", type=int, default=None)
    p.add_argument("--peers",     default="", help="comma-separated raft peer addresses")
    args = p.parse_args(argv)

    settings = Settings.from_env()
    if args.db_path:
        settings.db_path = args.db_path
    elif args.node_id is not None:
        settings.db_path = f"node{args.node_id}.db"
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    raft_address = f"{args.host}:{args.raft_port}" if args.raft_port else None
    peers = [x for x in args.peers.split(",") if x]
    store = build_store(settings, raft_address, peers)

    server, port = start_grpc_server(AuctionService(store, settings), args.port)
    label = f"Node{args.node_id}" if args.node_id is not None else "Auction server"
    print(f"{label} gRPC@[::]:{port}" + (f", Raft@{raft_address}" if raft_address else ""))

    def handle_shutdown(signum, frame):
        print(f"{label} shutting down…")
        server.stop(5)
        store.close()
        sys.exit(0)
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    server.wait_for_termination()


if __name__ == "__main__":
    main()
