"""
Collaborator contracts consumed by the auction orchestrator.

Couchbase-backed implementations live in ``models.operations``; the
WebSocket sink lives in the API service. Tests substitute in-memory ones.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from models.engine.auction import AuctionState
from models.engine.clock import Clock
from models.engine.events import (
    AuctionEndedEvent,
    LeaderboardUpdateEvent,
    NewBidEvent,
    TimeExtensionEvent,
)
from models.engine.records import Bidder, BidLedgerEntry

__all__ = [
    "Clock",
    "BidderDirectory",
    "AuctionStore",
    "BidLedger",
    "NotificationSink",
]


class BidderDirectory(Protocol):
    async def find_by_id(self, user_id: str) -> Optional[Bidder]:
        ...

    async def find_many(self, user_ids: Iterable[str]) -> List[Bidder]:
        ...


class AuctionStore(Protocol):
    async def find_by_id(self, auction_id: str) -> Optional[AuctionState]:
        ...

    async def find_many(self, auction_ids: Iterable[str]) -> List[AuctionState]:
        ...

    async def update_end_time(self, auction_id: str, end_time: datetime) -> Optional[AuctionState]:
        """Move ``end_time`` forward. An earlier instant leaves it unchanged."""
        ...


class BidLedger(Protocol):
    async def highest_for(self, auction_id: str) -> Optional[BidLedgerEntry]:
        ...

    async def all_for(self, auction_id: str) -> List[BidLedgerEntry]:
        ...

    async def all_for_user(self, user_id: str) -> List[BidLedgerEntry]:
        ...

    async def page(self, offset: int, limit: int) -> List[BidLedgerEntry]:
        ...

    async def count(self) -> int:
        ...

    async def commit_leading_bid(
        self,
        auction_id: str,
        previous: Optional[BidLedgerEntry],
        entry: BidLedgerEntry,
        new_end_time: Optional[datetime] = None,
    ) -> BidLedgerEntry:
        """Atomically demote ``previous`` to outbid and insert ``entry`` as leader.

        Also refreshes the auction's cached highest bid and winner, and moves
        its ``end_time`` to ``new_end_time`` when given and later than the
        stored one. Raises ``LeaderChangedError`` if the auction's leader is
        no longer ``previous`` and ``StorageError`` on write failure. Nothing
        is written in either case.
        """
        ...


class NotificationSink(Protocol):
    async def emit_new_bid(self, auction_id: str, event: NewBidEvent) -> None:
        ...

    async def emit_leaderboard_update(self, auction_id: str, event: LeaderboardUpdateEvent) -> None:
        ...

    async def emit_time_extension(self, auction_id: str, event: TimeExtensionEvent) -> None:
        ...

    async def emit_auction_ended(self, auction_id: str, event: AuctionEndedEvent) -> None:
        ...
