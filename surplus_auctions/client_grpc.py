"""
client_grpc.py

Fault-tolerant client for the surplus-auction gRPC service.

The client keeps a list of server addresses and fails over to the next one
when a call comes back ``UNAVAILABLE``.  Any other failure is turned back into
the typed error the server raised (see ``surplus_auctions.errors``).
"""
import logging
import time

import grpc
from google.protobuf import empty_pb2, json_format, struct_pb2

from surplus_auctions.errors import ERRORS_BY_KIND, BidTooLow, StoreUnavailable
from surplus_auctions.server_grpc import ERROR_KIND_KEY, SERVICE_NAME, AuctionService

log = logging.getLogger(__name__)

_EMPTY_METHODS = {"Watch", "Unwatch", "IncrementViews"}


def _typed_error(err: grpc.RpcError):
    kind = None
    for key, value in (err.trailing_metadata() or ()):
        if key == ERROR_KIND_KEY:
            kind = value
    cls = ERRORS_BY_KIND.get(kind)
    if cls is None:
        return None
    if cls is BidTooLow:
        return BidTooLow(message=err.details())
    return cls(err.details())


class AuctionClient:
    def __init__(self, servers, max_retries=3, retry_delay=0.1, timeout=5.0):
        if isinstance(servers, str):
            servers = [s for s in servers.split(",") if s]
        self.servers = list(servers)
        self.idx = 0
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.channel = None
        self._calls = {}
        self.connect()

    def connect(self):
        """(Re)open a channel to the current server and bind the method callables."""
        if self.channel is not None:
            self.channel.close()
        addr = self.servers[self.idx]
        self.channel = grpc.insecure_channel(addr)
        self._calls = {
            name: self.channel.unary_unary(
                f"/{SERVICE_NAME}/{name}",
                request_serializer=lambda msg: msg.SerializeToString(),
                response_deserializer=(empty_pb2.Empty.FromString if name in _EMPTY_METHODS
                                       else struct_pb2.Struct.FromString),
            )
            for name in AuctionService.METHODS
        }
        log.debug("connected to %s", addr)

    def close(self):
        if self.channel is not None:
            self.channel.close()
            self.channel = None

    def call(self, method, **payload):
        """
        Issue *method* with *payload* as a Struct.  On UNAVAILABLE, move to the
        next server and retry up to ``max_retries`` times.
        """
        req = struct_pb2.Struct()
        req.update(payload)
        last = None
        for _ in range(self.max_retries):
            try:
                resp = self._calls[method](req, timeout=self.timeout)
            except grpc.RpcError as e:
                typed = _typed_error(e)
                if typed is not None and not isinstance(typed, StoreUnavailable):
                    raise typed from None
                if e.code() in (grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.DEADLINE_EXCEEDED):
                    log.info("%s unavailable on %s, retrying", method, self.servers[self.idx])
                    last = e
                    self.idx = (self.idx + 1) % len(self.servers)
                    self.connect()
                    time.sleep(self.retry_delay)
                    continue
                raise
            if isinstance(resp, empty_pb2.Empty):
                return None
            return json_format.MessageToDict(resp)
        raise StoreUnavailable(
            f"{method}: servers unavailable" + (f" ({last.details()})" if last else ""))

    # ---------- convenience wrappers ---------- #
    def create_auction(self, seller: dict, **fields):
        return self.call("CreateAuction", seller=seller, **fields)["auctionId"]

    def get_auction(self, auction_id):
        return self.call("GetAuction", auctionId=auction_id)

    def list_active_auctions(self, **criteria):
        return self.call("ListActiveAuctions", **criteria)

    def list_seller_auctions(self, seller_id):
        return self.call("ListSellerAuctions", sellerId=seller_id)["auctions"]

    def place_bid(self, auction_id, bidder: dict, amount):
        return self.call("PlaceBid", auctionId=auction_id, bidder=bidder, amount=str(amount))

    def list_bids(self, auction_id):
        return self.call("ListBids", auctionId=auction_id).get("bids", [])

    def watch(self, auction_id, user_id):
        self.call("Watch", auctionId=auction_id, userId=user_id)

    def unwatch(self, auction_id, user_id):
        self.call("Unwatch", auctionId=auction_id, userId=user_id)

    def increment_views(self, auction_id):
        self.call("IncrementViews", auctionId=auction_id)

    def delete_auction(self, auction_id, requester_id):
        return self.call("DeleteAuction", auctionId=auction_id, requesterId=requester_id)

    def close_auction(self, auction_id, requester_id):
        return self.call("CloseAuction", auctionId=auction_id, requesterId=requester_id)
