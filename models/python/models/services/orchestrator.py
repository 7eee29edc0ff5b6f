"""
Bid placement and auction activity queries.

``AuctionOrchestrator.place_bid`` is the single write path for bids:

1. capture the bid time once
2. check the bidder and the auction
3. under the auction's lock: read the ledger leader, validate, and commit
   the bid together with any soft-close extension
4. still under the lock, emit new bid, leaderboard and (if any) extension
   events so every subscriber sees them in commit order

Everything after the commit is best effort towards subscribers; a
committed bid is always reported as accepted.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from models.engine.auction import (
    ACCEPTING_STATUSES,
    AuctionEngine,
    AuctionState,
    AuctionStatus,
    BidAttempt,
    BidResult,
    format_amount,
)
from models.engine.events import (
    AuctionEndedEvent,
    AuctionWinner,
    LeaderboardUpdateEvent,
    NewBidEvent,
    TimeExtensionEvent,
)
from models.engine.leaderboard import (
    BidStats,
    CurrentWinner,
    Leaderboard,
    LeaderboardParticipant,
    build_leaderboard,
    summarize_bids,
)
from models.engine.records import Bidder, BidLedgerEntry, BidType
from models.exceptions import (
    AuctionClosedError,
    AuctionNotFoundError,
    AuctionStillOpenError,
    BidderBannedError,
    BidderNotFoundError,
    BidRejectedError,
    LeaderChangedError,
    StorageError,
)
from models.ports import AuctionStore, BidderDirectory, BidLedger, NotificationSink
from models.services.locks import AuctionLocks
from models.services.notifications import LoggingNotificationSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

class PlaceBidOutcome(BaseModel):
    entry: BidLedgerEntry
    result: BidResult


class AuctionParticipation(BaseModel):
    auction_id: str
    participants: List[LeaderboardParticipant]
    total_participants: int
    total_bids: int
    current_highest_bid: float
    current_winner: Optional[CurrentWinner] = None


class CurrentHighestBid(BaseModel):
    auction_id: str
    current_highest_bid: float
    current_winner: Optional[CurrentWinner] = None
    total_participants: int


class PageMetadata(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total_items: int) -> "PageMetadata":
        total_pages = math.ceil(total_items / limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total_items=total_items,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        )


class ActivityPage(BaseModel):
    activities: List[BidLedgerEntry]
    metadata: PageMetadata


class UserAuctionSummary(BaseModel):
    auction_id: str
    item_name: str = ""
    end_time: Optional[datetime] = None
    status: Optional[AuctionStatus] = None
    user_total_bids: int
    user_highest_bid: float
    last_bid_time: datetime
    is_leading: bool


class UserAuctionsPage(BaseModel):
    auctions: List[UserAuctionSummary]
    metadata: PageMetadata


class AuctionStatusView(BaseModel):
    auction_id: str
    status: AuctionStatus
    end_time: datetime
    time_remaining_seconds: float
    is_final_countdown: bool
    highest_bid: float
    current_winner: Optional[str] = None
    next_valid_bid: float


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class AuctionOrchestrator:
    def __init__(
        self,
        engine: AuctionEngine,
        auctions: AuctionStore,
        ledger: BidLedger,
        bidders: BidderDirectory,
        notifier: Optional[NotificationSink] = None,
        locks: Optional[AuctionLocks] = None,
        max_commit_retries: int = 3,
        commit_backoff_ms: int = 10,
        max_leader_conflicts: int = 5,
        final_countdown_seconds: int = 60,
    ):
        self.engine = engine
        self.auctions = auctions
        self.ledger = ledger
        self.bidders = bidders
        self.notifier = notifier or LoggingNotificationSink()
        self.locks = locks or AuctionLocks()
        self.max_commit_retries = max_commit_retries
        self.commit_backoff_ms = commit_backoff_ms
        self.max_leader_conflicts = max_leader_conflicts
        self.final_countdown_seconds = final_countdown_seconds

    @property
    def clock(self):
        return self.engine.clock

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _load_auction(self, auction_id: str) -> AuctionState:
        auction = await self.auctions.find_by_id(auction_id)
        if auction is None:
            raise AuctionNotFoundError("Auction not found")
        return auction

    async def _load_bidder(self, user_id: str) -> Bidder:
        bidder = await self.bidders.find_by_id(user_id)
        if bidder is None:
            raise BidderNotFoundError("User not found")
        if not bidder.can_bid:
            raise BidderBannedError(f"User account is {bidder.status} and cannot place bids")
        return bidder

    async def _bidders_by_id(self, entries: List[BidLedgerEntry]) -> Dict[str, Bidder]:
        user_ids = {e.user_id for e in entries}
        if not user_ids:
            return {}
        return {b.id: b for b in await self.bidders.find_many(user_ids)}

    # ------------------------------------------------------------------
    # Bid placement
    # ------------------------------------------------------------------

    async def place_bid(
        self,
        auction_id: str,
        user_id: str,
        bid_amount: float,
        bid_type: BidType = "initial",
    ) -> PlaceBidOutcome:
        bid_time = self.clock.now()

        bidder = await self._load_bidder(user_id)
        auction = await self._load_auction(auction_id)
        if auction.end_time < bid_time:
            raise AuctionClosedError("Auction has ended")

        async with self.locks.hold(auction_id):
            # a bid that held the lock before us may have extended end_time
            auction = await self._load_auction(auction_id)
            auction, entry, result = await self._commit(auction, user_id, bid_amount, bid_type, bid_time)

            # Committed: from here on nothing may fail the bid
            extension: Optional[TimeExtensionEvent] = None
            if result.time_extended:
                extension = TimeExtensionEvent(
                    auction_id=auction_id,
                    new_end_time=result.new_end_time,
                    extension_minutes=result.extension_minutes,
                    reason="Bid placed in final minutes",
                    timestamp=bid_time,
                )
                logger.info(f"Auction {auction_id} extended to {result.new_end_time.isoformat()}")

            logger.info(
                f"Bid {entry.id} of {format_amount(bid_amount)} by {user_id} leads auction {auction_id}"
            )
            # Emitted under the lock so subscribers see events in commit order
            await self._broadcast(auction_id, bidder, entry, extension)

        return PlaceBidOutcome(entry=entry, result=result)

    async def _commit(
        self,
        auction: AuctionState,
        user_id: str,
        bid_amount: float,
        bid_type: BidType,
        bid_time: datetime,
    ) -> Tuple[AuctionState, BidLedgerEntry, BidResult]:
        """Validate against the ledger leader and commit, re-reading on conflict.

        The soft-close extension, if any, is written by the same ledger commit.
        """
        auction_id = auction.id
        conflicts = 0
        failures = 0
        conflict_backoff_ms = self.commit_backoff_ms
        backoff_ms = self.commit_backoff_ms

        while True:
            highest = await self.ledger.highest_for(auction_id)
            if highest and bid_amount <= highest.bid_amount:
                raise BidRejectedError(
                    f"Bid must be higher than current highest bid of {format_amount(highest.bid_amount)}"
                )

            # auction.highest_bid is a cache; the ledger is authoritative
            state = auction.model_copy(update={
                "highest_bid": highest.bid_amount if highest else 0,
                "current_winner": highest.user_id if highest else None,
                "leading_bid_id": highest.id if highest else None,
            })
            result = self.engine.process_bid(
                state, BidAttempt(user_id=user_id, bid_amount=bid_amount, bid_time=bid_time)
            )
            if not result.success:
                logger.info(f"Bid of {format_amount(bid_amount)} by {user_id} on {auction_id} rejected: {result.error}")
                if result.auction_status not in ACCEPTING_STATUSES:
                    raise AuctionClosedError(result.error)
                raise BidRejectedError(result.error)

            # a bid on the window edge computes the current end; nothing to move
            if result.time_extended and result.new_end_time <= auction.end_time:
                result.time_extended = False
                result.new_end_time = None
                result.extension_minutes = None

            entry = BidLedgerEntry(
                auction_id=auction_id,
                user_id=user_id,
                bid_amount=bid_amount,
                bid_type="winning" if highest else bid_type,
                is_active=True,
                bid_time=bid_time,
            )

            try:
                committed = await self.ledger.commit_leading_bid(
                    auction_id, highest, entry, new_end_time=result.new_end_time,
                )
                return auction, committed, result
            except LeaderChangedError as e:
                conflicts += 1
                if conflicts > self.max_leader_conflicts:
                    raise StorageError("Concurrent update conflict, please retry", cause=e) from e
                logger.info(
                    f"Leader of auction {auction_id} changed during bid by {user_id}, "
                    f"re-validating in {conflict_backoff_ms}ms"
                )
                await self._backoff(conflict_backoff_ms)
                conflict_backoff_ms *= 2
                auction = await self._load_auction(auction_id)
            except StorageError as e:
                failures += 1
                if failures > self.max_commit_retries:
                    logger.error(f"Giving up on bid by {user_id} on {auction_id} after {failures} attempts: {e}")
                    raise
                logger.warning(f"Bid commit on {auction_id} failed (attempt {failures}), retrying in {backoff_ms}ms")
                await self._backoff(backoff_ms)
                backoff_ms *= 2

    async def _backoff(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)

    async def _broadcast(
        self,
        auction_id: str,
        bidder: Bidder,
        entry: BidLedgerEntry,
        extension: Optional[TimeExtensionEvent],
    ) -> None:
        await self._emit(self.notifier.emit_new_bid, auction_id, NewBidEvent(
            auction_id=auction_id,
            user_id=entry.user_id,
            user_name=bidder.name,
            bid_amount=entry.bid_amount,
            bid_type=entry.bid_type,
            bid_time=entry.bid_time,
            is_new_leader=True,
        ))

        board = await self._post_commit_leaderboard(auction_id, bidder)
        if board is not None:
            await self._emit(self.notifier.emit_leaderboard_update, auction_id, LeaderboardUpdateEvent(
                auction_id=auction_id,
                participants=board.participants,
                current_highest_bid=board.current_highest_bid,
                current_winner=board.current_winner,
                total_participants=board.total_participants,
                total_bids=board.total_bids,
                timestamp=entry.bid_time,
            ))

        if extension:
            await self._emit(self.notifier.emit_time_extension, auction_id, extension)

    async def _post_commit_leaderboard(self, auction_id: str, bidder: Bidder) -> Optional[Leaderboard]:
        """Leaderboard after a commit, or None when the ledger cannot be read."""
        try:
            entries = await self.ledger.all_for(auction_id)
        except Exception:
            logger.warning(f"Could not reload bids of auction {auction_id}; leaderboard update skipped", exc_info=True)
            return None

        try:
            bidders = await self._bidders_by_id(entries)
        except Exception:
            logger.warning(f"Could not load bidder names for auction {auction_id}", exc_info=True)
            bidders = {bidder.id: bidder}
        return build_leaderboard(entries, bidders)

    async def _emit(self, emit, auction_id: str, event: BaseModel) -> None:
        try:
            await emit(auction_id, event)
        except Exception:
            logger.warning(f"Failed to deliver {event.type} for auction {auction_id}", exc_info=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _leaderboard(self, auction_id: str) -> Leaderboard:
        entries = await self.ledger.all_for(auction_id)
        return build_leaderboard(entries, await self._bidders_by_id(entries))

    async def get_auction_participation(self, auction_id: str) -> AuctionParticipation:
        board = await self._leaderboard(auction_id)
        return AuctionParticipation(auction_id=auction_id, **board.model_dump())

    async def get_current_highest_bid(self, auction_id: str) -> CurrentHighestBid:
        board = await self._leaderboard(auction_id)
        return CurrentHighestBid(
            auction_id=auction_id,
            current_highest_bid=board.current_highest_bid,
            current_winner=board.current_winner,
            total_participants=board.total_participants,
        )

    async def get_auction_stats(self, auction_id: str) -> BidStats:
        return summarize_bids(await self.ledger.all_for(auction_id))

    async def get_user_auction_history(self, auction_id: str, user_id: str) -> List[BidLedgerEntry]:
        entries = await self.ledger.all_for(auction_id)
        mine = [e for e in entries if e.user_id == user_id]
        return sorted(mine, key=lambda e: (e.bid_time, e.sequence), reverse=True)

    async def get_user_bid_auctions(self, user_id: str, page: int = 1, limit: int = 10) -> UserAuctionsPage:
        page, limit = max(page, 1), max(limit, 1)
        entries = await self.ledger.all_for_user(user_id)

        grouped: Dict[str, List[BidLedgerEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.auction_id, []).append(entry)

        ordered = sorted(
            grouped.items(),
            key=lambda kv: max(e.bid_time for e in kv[1]),
            reverse=True,
        )
        window = ordered[(page - 1) * limit: page * limit]
        auctions = {a.id: a for a in await self.auctions.find_many([aid for aid, _ in window])}

        summaries = []
        for auction_id, bids in window:
            auction = auctions.get(auction_id)
            summaries.append(UserAuctionSummary(
                auction_id=auction_id,
                item_name=auction.item_name if auction else "",
                end_time=auction.end_time if auction else None,
                status=self.engine.get_auction_status(auction) if auction else None,
                user_total_bids=len(bids),
                user_highest_bid=max(b.bid_amount for b in bids),
                last_bid_time=max(b.bid_time for b in bids),
                is_leading=any(b.is_active for b in bids),
            ))

        return UserAuctionsPage(
            auctions=summaries,
            metadata=PageMetadata.build(page, limit, len(ordered)),
        )

    async def get_all_auction_activities(self, page: int = 1, limit: int = 20) -> ActivityPage:
        page, limit = max(page, 1), max(limit, 1)
        activities = await self.ledger.page((page - 1) * limit, limit)
        total = await self.ledger.count()
        return ActivityPage(activities=activities, metadata=PageMetadata.build(page, limit, total))

    async def get_auction_status(self, auction_id: str) -> AuctionStatusView:
        auction = await self._load_auction(auction_id)
        remaining: timedelta = self.engine.get_time_remaining(auction)
        return AuctionStatusView(
            auction_id=auction_id,
            status=self.engine.get_auction_status(auction),
            end_time=auction.end_time,
            time_remaining_seconds=remaining.total_seconds(),
            is_final_countdown=self.engine.is_in_final_countdown(auction, self.final_countdown_seconds),
            highest_bid=auction.highest_bid,
            current_winner=auction.current_winner,
            next_valid_bid=self.engine.get_next_valid_bid(auction, auction.highest_bid),
        )

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def announce_auction_result(self, auction_id: str) -> AuctionEndedEvent:
        """Decide the winner of an ended auction and broadcast it.

        Closing is evaluated on demand; nothing sweeps auctions in the
        background.
        """
        auction = await self._load_auction(auction_id)
        if self.engine.get_auction_status(auction) != AuctionStatus.ENDED:
            raise AuctionStillOpenError("Auction is still open")

        entries = await self.ledger.all_for(auction_id)
        board = build_leaderboard(entries, await self._bidders_by_id(entries))
        decision = self.engine.determine_winner(auction.model_copy(update={
            "highest_bid": board.current_highest_bid,
            "current_winner": board.current_winner.user_id if board.current_winner else None,
        }))

        winner = None
        if decision.has_winner:
            winner = AuctionWinner(
                user_id=decision.winner_id,
                name=board.current_winner.name,
                winning_bid=decision.winning_bid,
            )
        event = AuctionEndedEvent(
            auction_id=auction_id,
            winner=winner,
            total_bids=board.total_bids,
            total_participants=board.total_participants,
            timestamp=self.clock.now(),
        )
        logger.info(
            f"Auction {auction_id} ended: "
            + (f"won by {winner.user_id} at {format_amount(winner.winning_bid)}" if winner else "no bids")
        )
        await self._emit(self.notifier.emit_auction_ended, auction_id, event)
        return event
