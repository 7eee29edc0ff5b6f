import asyncio
import logging
from datetime import timedelta

import pytest

from fakes import (
    NOW,
    FailingSink,
    FlakyBidLedger,
    InMemoryBidLedger,
    RecordingSink,
    make_auction,
)
from models.engine.auction import AuctionEngine, AuctionStatus
from models.engine.clock import FixedClock
from models.engine.records import Bidder, BidLedgerEntry
from models.exceptions import (
    AuctionClosedError,
    AuctionNotFoundError,
    AuctionStillOpenError,
    BidderBannedError,
    BidderNotFoundError,
    BidRejectedError,
    LockTimeoutError,
    StorageError,
)
from models.services.locks import AuctionLocks
from models.services.orchestrator import AuctionOrchestrator

END = NOW + timedelta(hours=1)


def active_entries(ledger):
    return [e for e in ledger.entries if e.is_active]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_bid_becomes_leader(orchestrator, ledger, store, sink):
    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)

    assert outcome.result.success
    assert outcome.entry.bid_type == "initial"
    assert outcome.entry.is_active
    assert outcome.entry.bid_time == NOW
    assert outcome.entry.sequence == 1

    auction = store.auctions["auction-1"]
    assert auction.highest_bid == 100000
    assert auction.current_winner == "alice"
    assert auction.leading_bid_id == outcome.entry.id
    assert sink.kinds == ["new_bid_placed", "auction_leaderboard_update"]


@pytest.mark.asyncio
async def test_caller_bid_type_kept_only_for_first_bid(orchestrator):
    first = await orchestrator.place_bid("auction-1", "alice", 100000, bid_type="auto")
    second = await orchestrator.place_bid("auction-1", "bob", 110000, bid_type="auto")
    assert first.entry.bid_type == "auto"
    assert second.entry.bid_type == "winning"


@pytest.mark.asyncio
async def test_outbid_flips_previous_leader(opened_at_130k, ledger):
    alice, bob = ledger.entries
    assert not alice.is_active
    assert alice.bid_type == "outbid"
    assert bob.is_active
    assert bob.bid_type == "winning"
    assert len(active_entries(ledger)) == 1


@pytest.mark.asyncio
async def test_result_reports_previous_leader(orchestrator):
    await orchestrator.place_bid("auction-1", "alice", 100000)
    outcome = await orchestrator.place_bid("auction-1", "bob", 130000)
    assert outcome.result.previous_highest_bid == 100000
    assert outcome.result.previous_winner == "alice"


@pytest.mark.asyncio
async def test_leaderboard_event_reflects_the_commit(orchestrator, sink):
    await orchestrator.place_bid("auction-1", "alice", 100000)
    await orchestrator.place_bid("auction-1", "bob", 120000)

    _, auction_id, new_bid = sink.events[-2]
    _, _, board = sink.events[-1]
    assert auction_id == "auction-1"
    assert new_bid.user_name == "Bob"
    assert new_bid.bid_amount == 120000
    assert board.current_highest_bid == 120000
    assert board.current_winner.name == "Bob"
    assert [p.user_id for p in board.participants] == ["bob", "alice"]
    assert board.total_bids == 2


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_bidder(orchestrator):
    with pytest.raises(BidderNotFoundError) as exc:
        await orchestrator.place_bid("auction-1", "nobody", 100000)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_banned_bidder(orchestrator, ledger):
    with pytest.raises(BidderBannedError) as exc:
        await orchestrator.place_bid("auction-1", "mallory", 100000)
    assert exc.value.status_code == 403
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_inactive_bidder(orchestrator, bidders):
    bidders.add(Bidder(id="dave", name="Dave", status="inactive"))
    with pytest.raises(BidderBannedError):
        await orchestrator.place_bid("auction-1", "dave", 100000)


@pytest.mark.asyncio
async def test_unknown_auction(orchestrator):
    with pytest.raises(AuctionNotFoundError) as exc:
        await orchestrator.place_bid("missing", "alice", 100000)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_ended_auction(orchestrator, clock, ledger, sink):
    clock.set(END + timedelta(seconds=1))
    with pytest.raises(AuctionClosedError) as exc:
        await orchestrator.place_bid("auction-1", "alice", 100000)
    assert exc.value.message == "Auction has ended"
    assert exc.value.status_code == 400
    assert ledger.entries == []
    assert sink.events == []


@pytest.mark.asyncio
async def test_not_started_auction(orchestrator, clock):
    clock.set(NOW - timedelta(hours=2))
    with pytest.raises(AuctionClosedError) as exc:
        await orchestrator.place_bid("auction-1", "alice", 100000)
    assert exc.value.message == "Auction has not started yet"


@pytest.mark.asyncio
async def test_off_increment_bid(orchestrator, ledger):
    await orchestrator.place_bid("auction-1", "alice", 100000)
    with pytest.raises(BidRejectedError) as exc:
        await orchestrator.place_bid("auction-1", "bob", 105000)
    assert "must follow increment of 10,000" in exc.value.message
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_not_higher_than_ledger_leader(opened_at_130k, ledger):
    with pytest.raises(BidRejectedError) as exc:
        await opened_at_130k.place_bid("auction-1", "carol", 130000)
    assert exc.value.message == "Bid must be higher than current highest bid of 130,000"
    assert len(ledger.entries) == 2


@pytest.mark.asyncio
async def test_stale_auction_cache_does_not_admit_lower_bids(orchestrator, store, ledger):
    await orchestrator.place_bid("auction-1", "alice", 130000)
    # cached leader lags the ledger
    store.auctions["auction-1"].highest_bid = 0

    with pytest.raises(BidRejectedError):
        await orchestrator.place_bid("auction-1", "bob", 120000)


# ---------------------------------------------------------------------------
# Soft close
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_bid_in_window_extends_end_time(orchestrator, clock, store, sink):
    clock.set(END - timedelta(minutes=2))
    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)

    assert outcome.result.time_extended
    assert outcome.result.new_end_time == END + timedelta(minutes=3)
    assert outcome.result.extension_minutes == 5
    assert store.auctions["auction-1"].end_time == END + timedelta(minutes=3)
    assert sink.kinds == [
        "new_bid_placed",
        "auction_leaderboard_update",
        "auction_time_extended",
    ]
    _, _, extension = sink.events[-1]
    assert extension.new_end_time == END + timedelta(minutes=3)


@pytest.mark.asyncio
async def test_bid_outside_window_keeps_end_time(orchestrator, store, sink):
    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)
    assert not outcome.result.time_extended
    assert outcome.result.new_end_time is None
    assert store.auctions["auction-1"].end_time == END
    assert store.end_time_updates == []
    assert "auction_time_extended" not in sink.kinds


@pytest.mark.asyncio
async def test_extensions_slide_with_each_late_bid(orchestrator, clock, store):
    clock.set(END - timedelta(minutes=1))
    await orchestrator.place_bid("auction-1", "alice", 100000)
    assert store.auctions["auction-1"].end_time == END + timedelta(minutes=4)

    # past the original end, inside the extended one
    clock.set(END + timedelta(minutes=2))
    await orchestrator.place_bid("auction-1", "bob", 110000)
    assert store.auctions["auction-1"].end_time == END + timedelta(minutes=7)


@pytest.mark.asyncio
async def test_bid_on_the_window_edge_does_not_move_end_time_back(orchestrator, clock, store):
    clock.set(END - timedelta(minutes=5))
    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)
    assert store.auctions["auction-1"].end_time == END
    assert not outcome.result.time_extended


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_bids_leave_one_leader(opened_at_130k, ledger):
    results = await asyncio.gather(
        opened_at_130k.place_bid("auction-1", "carol", 150000),
        opened_at_130k.place_bid("auction-1", "alice", 140000),
        return_exceptions=True,
    )

    leaders = active_entries(ledger)
    assert len(leaders) == 1
    assert leaders[0].bid_amount == 150000
    assert leaders[0].user_id == "carol"

    # committed amounts only ever go up
    amounts = [e.bid_amount for e in sorted(ledger.entries, key=lambda e: e.sequence)]
    assert amounts == sorted(amounts)
    assert len(set(amounts)) == len(amounts)

    carol, alice = results
    assert not isinstance(carol, Exception)
    assert isinstance(alice, BidRejectedError) or alice.entry.bid_amount == 140000


@pytest.mark.asyncio
async def test_lower_bid_revalidated_after_losing_the_race(engine, store, bidders, sink):
    """A rival process commits 150,000 between our read and our write."""

    class RacingLedger(InMemoryBidLedger):
        raced = False

        async def commit_leading_bid(self, auction_id, previous, entry, new_end_time=None):
            if not self.raced:
                self.raced = True
                rival = BidLedgerEntry(
                    auction_id=auction_id,
                    user_id="carol",
                    bid_amount=150000,
                    bid_type="winning",
                    bid_time=entry.bid_time,
                )
                await super().commit_leading_bid(auction_id, previous, rival)
            return await super().commit_leading_bid(auction_id, previous, entry, new_end_time)

    ledger = RacingLedger(store)
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders, sink, commit_backoff_ms=0)
    await InMemoryBidLedger.commit_leading_bid(ledger, "auction-1", None, BidLedgerEntry(
        auction_id="auction-1", user_id="bob", bid_amount=130000, bid_time=NOW,
    ))

    with pytest.raises(BidRejectedError) as exc:
        await orchestrator.place_bid("auction-1", "alice", 140000)

    assert exc.value.message == "Bid must be higher than current highest bid of 150,000"
    assert [e.user_id for e in active_entries(ledger)] == ["carol"]
    assert sink.events == []


@pytest.mark.asyncio
async def test_separate_processes_serialize_through_the_ledger(engine, store, ledger, bidders):
    """Two orchestrators with their own locks share one store."""
    first = AuctionOrchestrator(engine, store, ledger, bidders, RecordingSink(), locks=AuctionLocks())
    second = AuctionOrchestrator(engine, store, ledger, bidders, RecordingSink(), locks=AuctionLocks())

    await asyncio.gather(
        first.place_bid("auction-1", "alice", 100000),
        second.place_bid("auction-1", "bob", 110000),
        return_exceptions=True,
    )

    leaders = active_entries(ledger)
    assert len(leaders) == 1
    assert leaders[0].bid_amount == max(e.bid_amount for e in ledger.entries)
    assert store.auctions["auction-1"].leading_bid_id == leaders[0].id


@pytest.mark.asyncio
async def test_lock_timeout(orchestrator):
    orchestrator.locks.timeout_seconds = 0.01
    async with orchestrator.locks.hold("auction-1"):
        with pytest.raises(LockTimeoutError) as exc:
            await orchestrator.place_bid("auction-1", "alice", 100000)
    assert exc.value.status_code == 503


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transient_storage_failure_is_retried(engine, store, bidders, sink):
    ledger = FlakyBidLedger(store, failures=2)
    orchestrator = AuctionOrchestrator(
        engine, store, ledger, bidders, sink, max_commit_retries=3, commit_backoff_ms=0,
    )
    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)
    assert outcome.entry.is_active
    assert ledger.attempts == 3


@pytest.mark.asyncio
async def test_persistent_storage_failure_surfaces_with_cause(engine, store, bidders, sink):
    ledger = FlakyBidLedger(store, failures=10)
    orchestrator = AuctionOrchestrator(
        engine, store, ledger, bidders, sink, max_commit_retries=2, commit_backoff_ms=0,
    )
    with pytest.raises(StorageError) as exc:
        await orchestrator.place_bid("auction-1", "alice", 100000)

    assert exc.value.status_code == 503
    assert isinstance(exc.value.cause, TimeoutError)
    assert ledger.attempts == 3
    assert ledger.entries == []
    assert sink.events == []


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sink_failures_never_fail_the_bid(engine, store, ledger, bidders, clock):
    sink = FailingSink()
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders, sink)
    clock.set(END - timedelta(minutes=1))

    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)

    assert outcome.result.success
    assert outcome.result.time_extended
    assert sink.kinds == [
        "new_bid_placed",
        "auction_leaderboard_update",
        "auction_time_extended",
    ]
    assert len(ledger.entries) == 1


@pytest.mark.asyncio
async def test_events_follow_commit_order_across_concurrent_bids(engine, store, ledger, bidders):
    class SlowFirstSink(RecordingSink):
        delayed = False

        async def emit_new_bid(self, auction_id, event):
            if not self.delayed:
                self.delayed = True
                await asyncio.sleep(0.05)
            await super().emit_new_bid(auction_id, event)

    sink = SlowFirstSink()
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders, sink, locks=AuctionLocks(timeout_seconds=1.0))

    await asyncio.gather(
        orchestrator.place_bid("auction-1", "alice", 100000),
        orchestrator.place_bid("auction-1", "bob", 110000),
    )

    boards = [e.current_highest_bid for kind, _, e in sink.events if kind == "leaderboard"]
    assert boards == [100000, 110000]
    assert [e.bid_amount for kind, _, e in sink.events if kind == "new_bid"] == [100000, 110000]


# ---------------------------------------------------------------------------
# Failures after the commit
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ledger_reload_failure_after_commit_still_accepts_the_bid(engine, store, bidders, sink):
    class UnreadableLedger(InMemoryBidLedger):
        async def all_for(self, auction_id):
            raise StorageError("query service unavailable")

    ledger = UnreadableLedger(store)
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders, sink)

    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)

    assert outcome.result.success
    assert outcome.entry.is_active
    assert len(ledger.entries) == 1
    # the leaderboard needs the ledger; the other events still go out
    assert sink.kinds == ["new_bid_placed"]


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [StorageError("users unavailable"), RuntimeError("decode error")])
async def test_bidder_lookup_failure_after_commit_still_accepts_the_bid(engine, store, ledger, bidders, sink, failure):
    async def broken_find_many(user_ids):
        raise failure

    bidders.find_many = broken_find_many
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders, sink)

    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)

    assert outcome.result.success
    assert sink.kinds == ["new_bid_placed", "auction_leaderboard_update"]
    _, _, board = sink.events[1]
    assert board.participants[0].name == "Alice"


@pytest.mark.asyncio
async def test_extension_is_written_with_the_bid(engine, store, ledger, bidders, sink, clock):
    async def broken_update_end_time(auction_id, end_time):
        raise StorageError("extend failed")

    store.update_end_time = broken_update_end_time
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders, sink)
    clock.set(END - timedelta(minutes=2))

    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)

    assert outcome.result.time_extended
    assert store.auctions["auction-1"].end_time == END + timedelta(minutes=3)
    assert ledger.extensions == [END + timedelta(minutes=3)]
    assert sink.kinds[-1] == "auction_time_extended"


@pytest.mark.asyncio
async def test_failed_late_bid_writes_neither_bid_nor_extension(engine, store, bidders, sink, clock):
    ledger = FlakyBidLedger(store, failures=100)
    orchestrator = AuctionOrchestrator(
        engine, store, ledger, bidders, sink, max_commit_retries=2, commit_backoff_ms=0,
    )
    clock.set(END - timedelta(minutes=2))

    with pytest.raises(StorageError):
        await orchestrator.place_bid("auction-1", "alice", 100000)

    assert ledger.entries == []
    assert store.auctions["auction-1"].end_time == END
    assert sink.events == []


@pytest.mark.asyncio
async def test_leader_conflicts_back_off_before_rereading(engine, store, bidders, sink):
    class LaggingLedger(InMemoryBidLedger):
        """Returns no leader for a while after a commit, like a lagging index."""
        stale_reads = 2

        async def highest_for(self, auction_id):
            if self.stale_reads:
                self.stale_reads -= 1
                return None
            return await super().highest_for(auction_id)

    class RecordingBackoff(AuctionOrchestrator):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.delays = []

        async def _backoff(self, delay_ms):
            self.delays.append(delay_ms)

    ledger = LaggingLedger(store)
    await InMemoryBidLedger.commit_leading_bid(ledger, "auction-1", None, BidLedgerEntry(
        auction_id="auction-1", user_id="bob", bid_amount=130000, bid_time=NOW,
    ))
    orchestrator = RecordingBackoff(engine, store, ledger, bidders, sink, commit_backoff_ms=10)

    outcome = await orchestrator.place_bid("auction-1", "alice", 140000)

    assert outcome.entry.bid_amount == 140000
    assert orchestrator.delays == [10, 20]
    assert [e.user_id for e in active_entries(ledger)] == ["alice"]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_participation(opened_at_130k):
    await opened_at_130k.place_bid("auction-1", "alice", 150000)
    participation = await opened_at_130k.get_auction_participation("auction-1")

    assert participation.auction_id == "auction-1"
    assert participation.total_participants == 2
    assert participation.total_bids == 3
    assert participation.current_highest_bid == 150000
    assert participation.current_winner.user_id == "alice"
    alice = participation.participants[0]
    assert alice.user_id == "alice"
    assert alice.total_bids == 2
    assert alice.is_highest_bidder
    assert alice.email == "alice@example.com"


@pytest.mark.asyncio
async def test_participation_without_bids(orchestrator):
    participation = await orchestrator.get_auction_participation("auction-1")
    assert participation.participants == []
    assert participation.current_winner is None


@pytest.mark.asyncio
async def test_current_highest_bid(opened_at_130k):
    highest = await opened_at_130k.get_current_highest_bid("auction-1")
    assert highest.current_highest_bid == 130000
    assert highest.current_winner.name == "Bob"
    assert highest.total_participants == 2


@pytest.mark.asyncio
async def test_stats(opened_at_130k):
    stats = await opened_at_130k.get_auction_stats("auction-1")
    assert stats.total_bids == 2
    assert stats.unique_participants == 2
    assert stats.average_bid_amount == 115000
    assert stats.current_highest_bid == 130000


@pytest.mark.asyncio
async def test_user_history_newest_first(orchestrator, clock):
    await orchestrator.place_bid("auction-1", "alice", 100000)
    clock.advance(minutes=1)
    await orchestrator.place_bid("auction-1", "bob", 110000)
    clock.advance(minutes=1)
    await orchestrator.place_bid("auction-1", "alice", 120000)

    history = await orchestrator.get_user_auction_history("auction-1", "alice")
    assert [e.bid_amount for e in history] == [120000, 100000]


@pytest.mark.asyncio
async def test_user_bid_auctions(orchestrator, store, clock):
    store.add(make_auction(id="auction-2", item_name="Old map"))
    await orchestrator.place_bid("auction-1", "alice", 100000)
    await orchestrator.place_bid("auction-1", "bob", 110000)
    clock.advance(minutes=5)
    await orchestrator.place_bid("auction-2", "alice", 100000)

    page = await orchestrator.get_user_bid_auctions("alice", page=1, limit=10)

    assert [a.auction_id for a in page.auctions] == ["auction-2", "auction-1"]
    latest, older = page.auctions
    assert latest.item_name == "Old map"
    assert latest.is_leading
    assert latest.status == AuctionStatus.ACTIVE
    assert not older.is_leading
    assert older.user_highest_bid == 100000
    assert page.metadata.total_items == 2
    assert not page.metadata.has_next_page

    second_page = await orchestrator.get_user_bid_auctions("alice", page=2, limit=1)
    assert [a.auction_id for a in second_page.auctions] == ["auction-1"]
    assert second_page.metadata.total_pages == 2
    assert second_page.metadata.has_previous_page


@pytest.mark.asyncio
async def test_all_activities_paginated(orchestrator, clock):
    for i, user in enumerate(["alice", "bob", "carol"]):
        clock.advance(minutes=1)
        await orchestrator.place_bid("auction-1", user, 100000 + i * 10000)

    page = await orchestrator.get_all_auction_activities(page=1, limit=2)
    assert [e.user_id for e in page.activities] == ["carol", "bob"]
    assert page.metadata.total_items == 3
    assert page.metadata.total_pages == 2
    assert page.metadata.has_next_page
    assert not page.metadata.has_previous_page


@pytest.mark.asyncio
async def test_auction_status_view(opened_at_130k, clock):
    clock.set(END - timedelta(seconds=30))
    status = await opened_at_130k.get_auction_status("auction-1")
    assert status.status == AuctionStatus.IN_EXTRA_TIME
    assert status.time_remaining_seconds == 30
    assert status.is_final_countdown
    assert status.highest_bid == 130000
    assert status.next_valid_bid == 140000


@pytest.mark.asyncio
async def test_auction_status_unknown(orchestrator):
    with pytest.raises(AuctionNotFoundError):
        await orchestrator.get_auction_status("missing")


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_result_of_open_auction(orchestrator):
    with pytest.raises(AuctionStillOpenError):
        await orchestrator.announce_auction_result("auction-1")


@pytest.mark.asyncio
async def test_result_announces_winner(opened_at_130k, clock, sink):
    clock.set(END + timedelta(seconds=1))
    event = await opened_at_130k.announce_auction_result("auction-1")

    assert event.winner.user_id == "bob"
    assert event.winner.name == "Bob"
    assert event.winner.winning_bid == 130000
    assert event.total_bids == 2
    assert event.total_participants == 2
    assert sink.events[-1][0] == "ended"


@pytest.mark.asyncio
async def test_result_without_bids(orchestrator, clock, sink):
    clock.set(END + timedelta(seconds=1))
    event = await orchestrator.announce_auction_result("auction-1")
    assert event.winner is None
    assert event.total_bids == 0


@pytest.mark.asyncio
async def test_bid_time_is_captured_once(store, ledger, bidders, sink):
    class CountingClock(FixedClock):
        reads = 0

        def now(self):
            self.reads += 1
            return super().now()

    clock = CountingClock(NOW)
    orchestrator = AuctionOrchestrator(AuctionEngine(clock), store, ledger, bidders, sink)
    outcome = await orchestrator.place_bid("auction-1", "alice", 100000)
    assert outcome.entry.bid_time == NOW
    # every later decision reuses the captured bid time
    assert clock.reads == 1


@pytest.mark.asyncio
async def test_events_are_logged_without_a_transport(engine, store, ledger, bidders, clock, caplog):
    caplog.set_level(logging.INFO, logger="models.services.notifications")
    orchestrator = AuctionOrchestrator(engine, store, ledger, bidders)

    clock.set(END - timedelta(minutes=2))
    await orchestrator.place_bid("auction-1", "alice", 100000)

    messages = [r.getMessage() for r in caplog.records if r.name == "models.services.notifications"]
    assert any("new bid 100000" in m and "alice" in m for m in messages)
    assert any("extended by 5m" in m for m in messages)
