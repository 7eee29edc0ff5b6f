"""Real-time auction events pushed to subscribers of an auction room."""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel

from .leaderboard import CurrentWinner, LeaderboardParticipant
from .records import BidType


class NewBidEvent(BaseModel):
    type: Literal["new_bid_placed"] = "new_bid_placed"
    auction_id: str
    user_id: str
    user_name: str = ""
    bid_amount: float
    bid_type: BidType
    bid_time: datetime
    is_new_leader: bool


class LeaderboardUpdateEvent(BaseModel):
    type: Literal["auction_leaderboard_update"] = "auction_leaderboard_update"
    auction_id: str
    participants: List[LeaderboardParticipant]
    current_highest_bid: float
    current_winner: Optional[CurrentWinner] = None
    total_participants: int
    total_bids: int
    timestamp: datetime


class TimeExtensionEvent(BaseModel):
    type: Literal["auction_time_extended"] = "auction_time_extended"
    auction_id: str
    new_end_time: datetime
    extension_minutes: int
    reason: str
    timestamp: datetime


class AuctionWinner(BaseModel):
    user_id: str
    name: str = ""
    winning_bid: float


class AuctionEndedEvent(BaseModel):
    type: Literal["auction_ended"] = "auction_ended"
    auction_id: str
    winner: Optional[AuctionWinner] = None
    total_bids: int
    total_participants: int
    timestamp: datetime


AuctionEvent = Union[NewBidEvent, LeaderboardUpdateEvent, TimeExtensionEvent, AuctionEndedEvent]
