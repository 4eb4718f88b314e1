import socket
import time
from datetime import datetime, timezone

import pytest

from surplus_auctions.auctions import AuctionStore
from surplus_auctions.config import Settings
from surplus_auctions.db import DocumentStore
from surplus_auctions.ledger import BidLedger
from surplus_auctions.models import AuctionSpec, UserProfile
from surplus_auctions.watchers import WatchRegistry

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _free_port() -> int:
    s = socket.socket(); s.bind(("127.0.0.1", 0)); p = s.getsockname()[1]; s.close(); return p


def profile(user_id, complete=True):
    return UserProfile(
        user_id=user_id,
        display_name=user_id.capitalize(),
        company_name=f"{user_id.capitalize()} Supply Co",
        email=f"{user_id}@example.com",
        has_completed_company_profile=complete,
    )


def spec(**overrides):
    fields = dict(
        title="Industrial Printer - Canon ImageRunner",
        description="Lightly used, serviced last quarter",
        category="Office Supplies",
        starting_price=100,
        duration_days=1,
    )
    fields.update(overrides)
    return AuctionSpec(**fields)


@pytest.fixture(scope="function")
def store():
    db = DocumentStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def auctions(store):
    return AuctionStore(store)


@pytest.fixture
def ledger(auctions):
    return BidLedger(auctions)


@pytest.fixture
def watchers(store):
    return WatchRegistry(store)


@pytest.fixture
def seller():
    return profile("sam")


@pytest.fixture
def alice():
    return profile("alice")


@pytest.fixture
def bob():
    return profile("bob")


@pytest.fixture
def auction_id(auctions, seller):
    return auctions.create_auction(seller, spec(), now=T0)


@pytest.fixture(scope="function")
def raft_store():
    from surplus_auctions.raft_db import RaftDocumentStore
    db = RaftDocumentStore(
        f"127.0.0.1:{_free_port()}", [], ":memory:", timeout=5.0,
        raftMinTimeout=0.1, raftMaxTimeout=0.2, appendEntriesPeriod=0.01)
    t0 = time.time()
    while not db.has_leader() and time.time() - t0 < 10:
        time.sleep(0.05)
    if not db.has_leader():
        db.close()
        pytest.fail("single-node raft never elected itself leader")
    yield db
    db.close()


@pytest.fixture(scope="function")
def grpc_env(tmp_path):
    """In-process gRPC server over an in-memory store with a settable clock."""
    from surplus_auctions.client_grpc import AuctionClient
    from surplus_auctions.server_grpc import AuctionService, start_grpc_server

    db = DocumentStore(":memory:")
    settings = Settings(db_path=":memory:", usage_log=str(tmp_path / "usage.log"))
    clock_box = {"now": T0}
    service = AuctionService(db, settings, now_fn=lambda: clock_box["now"])
    server, port = start_grpc_server(service, 0, host="127.0.0.1")
    client = AuctionClient([f"127.0.0.1:{port}"], retry_delay=0.0)
    try:
        yield client, clock_box, settings
    finally:
        client.close()
        server.stop(None)
        db.close()
