"""
Pure auction rules: status, bid increments, soft-close extension, winner.

Nothing in this module performs I/O. The only source of "now" is the
injected clock, so every method is a deterministic function of its inputs
plus ``clock.now()``.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator

from .clock import Clock, SystemClock, ensure_utc


class AuctionStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    IN_EXTRA_TIME = "in_extra_time"
    ENDED = "ended"


ACCEPTING_STATUSES = (AuctionStatus.ACTIVE, AuctionStatus.IN_EXTRA_TIME)


class AuctionState(BaseModel):
    """Snapshot of an auction as read from storage for one bid attempt."""
    id: str
    item_name: str = ""
    start_price: float
    price_multiplication: float
    start_date: datetime
    end_date: datetime
    end_time: datetime  # authoritative close instant, moved by extensions
    extra_time: int = 0  # minutes
    highest_bid: float = 0
    current_winner: Optional[str] = None

    # Maintained alongside the ledger commit; used as the CAS guard
    leading_bid_id: Optional[str] = None
    bid_count: int = 0

    @field_validator("start_date", "end_date", "end_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class BidAttempt(BaseModel):
    user_id: str
    bid_amount: float
    bid_time: datetime

    @field_validator("bid_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class BidResult(BaseModel):
    success: bool = False
    error: Optional[str] = None
    is_new_leader: bool = False
    previous_highest_bid: float = 0
    previous_winner: Optional[str] = None
    time_extended: bool = False
    new_end_time: Optional[datetime] = None
    extension_minutes: Optional[int] = None
    auction_status: Optional[AuctionStatus] = None


class WinnerDecision(BaseModel):
    has_winner: bool
    winner_id: Optional[str] = None
    winning_bid: float = 0


def format_amount(amount: float) -> str:
    """Render an amount with thousands separators: 100000 -> '100,000'."""
    if float(amount).is_integer():
        return f"{amount:,.0f}"
    return f"{amount:,.2f}"


def _dec(value: float) -> Decimal:
    # str() round-trip keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


class AuctionEngine:
    """Stateless auction rules evaluated against an injected clock."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_auction_status(self, auction: AuctionState, at: Optional[datetime] = None) -> AuctionStatus:
        """Status at *at*, or at the clock's current time when omitted."""
        now = ensure_utc(at) if at else self.clock.now()

        if now < auction.start_date:
            return AuctionStatus.NOT_STARTED

        if now > auction.end_time:
            return AuctionStatus.ENDED

        if auction.extra_time > 0:
            threshold = auction.end_time - timedelta(minutes=auction.extra_time)
            if threshold <= now <= auction.end_time:
                return AuctionStatus.IN_EXTRA_TIME

        return AuctionStatus.ACTIVE

    def is_auction_active(self, auction: AuctionState) -> bool:
        return self.get_auction_status(auction) in ACCEPTING_STATUSES

    # ------------------------------------------------------------------
    # Increments
    # ------------------------------------------------------------------

    def is_valid_bid_increment(self, auction: AuctionState, bid_amount: float) -> bool:
        """A bid is valid when it equals ``start_price + n * price_multiplication``, n >= 0.

        ``price_multiplication`` is rejected at auction creation when it is not
        positive, so it is never zero here.
        """
        start = _dec(auction.start_price)
        amount = _dec(bid_amount)

        if amount < start:
            return False
        if amount == start:
            return True
        return (amount - start) % _dec(auction.price_multiplication) == 0

    def get_valid_bid_examples(self, auction: AuctionState, count: int = 3) -> List[float]:
        start = _dec(auction.start_price)
        step = _dec(auction.price_multiplication)
        return [float(start + n * step) for n in range(count)]

    def get_next_valid_bid(self, auction: AuctionState, current_highest_bid: float) -> float:
        start = _dec(auction.start_price)
        current = _dec(current_highest_bid)

        if current < start:
            return float(start)

        step = _dec(auction.price_multiplication)
        n = (current - start) // step + 1
        return float(start + n * step)

    def is_bid_higher_than_current(self, bid_amount: float, current_highest_bid: float) -> bool:
        return bid_amount > current_highest_bid

    # ------------------------------------------------------------------
    # Soft close
    # ------------------------------------------------------------------

    def should_extend_time(self, auction: AuctionState, bid_time: datetime) -> bool:
        """True when the bid lands inside the trailing window of the pre-bid end time."""
        if not auction.extra_time:
            return False

        bid_time = ensure_utc(bid_time)
        threshold = auction.end_time - timedelta(minutes=auction.extra_time)
        return threshold <= bid_time <= auction.end_time

    def calculate_new_end_time(self, auction: AuctionState, bid_time: datetime) -> datetime:
        # Sliding window: extra_time counted from the bid, not added to end_time
        return ensure_utc(bid_time) + timedelta(minutes=auction.extra_time)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def process_bid(self, auction: AuctionState, bid: BidAttempt) -> BidResult:
        """Decide whether ``bid`` is accepted against ``auction``.

        Checks run in a fixed order and the first failure wins: auction
        activity, start price, increment, then leadership. Activity is judged
        at ``bid.bid_time``, so a bid keeps the verdict of the instant it was
        placed however long it queued.
        """
        status = self.get_auction_status(auction, at=bid.bid_time)
        result = BidResult(
            previous_highest_bid=auction.highest_bid,
            previous_winner=auction.current_winner,
            auction_status=status,
        )

        if status not in ACCEPTING_STATUSES:
            if status == AuctionStatus.NOT_STARTED:
                result.error = "Auction has not started yet"
            else:
                result.error = "Auction has ended"
            return result

        if bid.bid_amount < auction.start_price:
            result.error = (
                f"Bid amount must be at least {format_amount(auction.start_price)} (start price)"
            )
            return result

        if not self.is_valid_bid_increment(auction, bid.bid_amount):
            examples = ", ".join(format_amount(e) for e in self.get_valid_bid_examples(auction))
            result.error = (
                f"Bid amount must follow increment of {format_amount(auction.price_multiplication)}. "
                f"Valid bids: {examples}, etc."
            )
            return result

        if auction.highest_bid > 0 and not self.is_bid_higher_than_current(
            bid.bid_amount, auction.highest_bid
        ):
            result.error = (
                f"Bid must be higher than current highest bid of {format_amount(auction.highest_bid)}"
            )
            return result

        if self.should_extend_time(auction, bid.bid_time):
            result.time_extended = True
            result.new_end_time = self.calculate_new_end_time(auction, bid.bid_time)
            result.extension_minutes = auction.extra_time

        result.success = True
        result.is_new_leader = True
        return result

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def determine_winner(self, auction: AuctionState) -> WinnerDecision:
        if self.get_auction_status(auction) != AuctionStatus.ENDED:
            return WinnerDecision(has_winner=False)

        return WinnerDecision(
            has_winner=auction.current_winner is not None,
            winner_id=auction.current_winner,
            winning_bid=auction.highest_bid,
        )

    def get_time_remaining(self, auction: AuctionState) -> timedelta:
        remaining = auction.end_time - self.clock.now()
        return max(remaining, timedelta(0))

    def is_in_final_countdown(self, auction: AuctionState, threshold_seconds: int = 60) -> bool:
        remaining = self.get_time_remaining(auction)
        return timedelta(0) < remaining <= timedelta(seconds=threshold_seconds)
