import pytest
import pytest_asyncio

from fakes import (
    NOW,
    make_auction,
    InMemoryAuctionStore,
    InMemoryBidderDirectory,
    InMemoryBidLedger,
    RecordingSink,
)
from models.engine.auction import AuctionEngine
from models.engine.clock import FixedClock
from models.engine.records import Bidder
from models.services.locks import AuctionLocks
from models.services.orchestrator import AuctionOrchestrator


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def engine(clock):
    return AuctionEngine(clock)


@pytest.fixture
def auction():
    return make_auction()


@pytest.fixture
def store(auction):
    return InMemoryAuctionStore(auction)


@pytest.fixture
def ledger(store):
    return InMemoryBidLedger(store)


@pytest.fixture
def bidders():
    return InMemoryBidderDirectory(
        Bidder(id="alice", name="Alice", email="alice@example.com"),
        Bidder(id="bob", name="Bob", email="bob@example.com"),
        Bidder(id="carol", name="Carol", email="carol@example.com"),
        Bidder(id="mallory", name="Mallory", email="mallory@example.com", status="banned"),
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def orchestrator(engine, store, ledger, bidders, sink):
    return AuctionOrchestrator(
        engine=engine,
        auctions=store,
        ledger=ledger,
        bidders=bidders,
        notifier=sink,
        locks=AuctionLocks(timeout_seconds=1.0),
        commit_backoff_ms=0,
    )


@pytest_asyncio.fixture
async def opened_at_130k(orchestrator):
    """The auction after 100,000 by alice and 130,000 by bob."""
    await orchestrator.place_bid("auction-1", "alice", 100000)
    await orchestrator.place_bid("auction-1", "bob", 130000)
    return orchestrator
