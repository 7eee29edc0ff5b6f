"""
Ledger aggregations: per-bidder leaderboard and bid statistics.

Both are pure folds over ledger entries so they can be recomputed after
every commit without touching storage.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel

from .records import Bidder, BidLedgerEntry


class LeaderboardParticipant(BaseModel):
    user_id: str
    name: str = ""
    email: str = ""
    role: str = ""
    total_bids: int
    highest_bid: float
    latest_bid_time: datetime
    is_highest_bidder: bool = False
    rank: int = 0


class CurrentWinner(BaseModel):
    user_id: str
    name: str = ""
    bid_amount: float


class Leaderboard(BaseModel):
    participants: List[LeaderboardParticipant]
    current_highest_bid: float = 0
    current_winner: Optional[CurrentWinner] = None
    total_participants: int = 0
    total_bids: int = 0


class BidRange(BaseModel):
    min: float = 0
    max: float = 0


class BidStats(BaseModel):
    total_bids: int
    unique_participants: int
    average_bid_amount: float
    current_highest_bid: float
    bid_range: BidRange


def _ordered(entries: Iterable[BidLedgerEntry]) -> List[BidLedgerEntry]:
    return sorted(entries, key=lambda e: (e.sequence, e.bid_time))


def active_entry(entries: Iterable[BidLedgerEntry]) -> Optional[BidLedgerEntry]:
    """The leading entry, or None when nobody has bid yet."""
    for entry in entries:
        if entry.is_active:
            return entry
    return None


def build_leaderboard(
    entries: Iterable[BidLedgerEntry],
    bidders: Optional[Mapping[str, Bidder]] = None,
) -> Leaderboard:
    """Rank bidders by their personal highest bid, descending.

    Ties go to whoever reached the tied amount first in ledger order.
    """
    bidders = bidders or {}
    ordered = _ordered(entries)

    stats: Dict[str, dict] = {}
    for position, entry in enumerate(ordered):
        user = stats.get(entry.user_id)
        if user is None:
            user = stats[entry.user_id] = {
                "total_bids": 0,
                "highest_bid": entry.bid_amount,
                "reached_at": position,
                "latest_bid_time": entry.bid_time,
            }
        user["total_bids"] += 1
        if entry.bid_amount > user["highest_bid"]:
            user["highest_bid"] = entry.bid_amount
            user["reached_at"] = position
        if entry.bid_time > user["latest_bid_time"]:
            user["latest_bid_time"] = entry.bid_time

    leader = active_entry(ordered)
    ranked = sorted(stats.items(), key=lambda kv: (-kv[1]["highest_bid"], kv[1]["reached_at"]))

    participants = []
    for rank, (user_id, user) in enumerate(ranked, start=1):
        profile = bidders.get(user_id)
        participants.append(LeaderboardParticipant(
            user_id=user_id,
            name=profile.name if profile else "",
            email=profile.email if profile else "",
            role=profile.role if profile else "",
            total_bids=user["total_bids"],
            highest_bid=user["highest_bid"],
            latest_bid_time=user["latest_bid_time"],
            is_highest_bidder=leader is not None and leader.user_id == user_id,
            rank=rank,
        ))

    current_winner = None
    if leader:
        profile = bidders.get(leader.user_id)
        current_winner = CurrentWinner(
            user_id=leader.user_id,
            name=profile.name if profile else "",
            bid_amount=leader.bid_amount,
        )

    return Leaderboard(
        participants=participants,
        current_highest_bid=leader.bid_amount if leader else 0,
        current_winner=current_winner,
        total_participants=len(participants),
        total_bids=len(ordered),
    )


def summarize_bids(entries: Iterable[BidLedgerEntry]) -> BidStats:
    entries = list(entries)
    if not entries:
        return BidStats(
            total_bids=0,
            unique_participants=0,
            average_bid_amount=0,
            current_highest_bid=0,
            bid_range=BidRange(),
        )

    amounts = [e.bid_amount for e in entries]
    leader = active_entry(entries)
    return BidStats(
        total_bids=len(entries),
        unique_participants=len({e.user_id for e in entries}),
        average_bid_amount=round(sum(amounts) / len(amounts)),
        current_highest_bid=leader.bid_amount if leader else 0,
        bid_range=BidRange(min=min(amounts), max=max(amounts)),
    )
