from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from .clock import ensure_utc

BidType = Literal["initial", "outbid", "winning", "auto"]
BidderStatus = Literal["active", "banned", "inactive"]


class BidLedgerEntry(BaseModel):
    """One recorded bid. Only the current leader has ``is_active=True``."""
    id: Optional[str] = None
    auction_id: str
    user_id: str
    bid_amount: float
    bid_type: BidType = "initial"
    is_active: bool = True
    bid_time: datetime
    sequence: int = 0  # per-auction insertion order, assigned on commit

    @field_validator("bid_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Bidder(BaseModel):
    id: str
    name: str = ""
    email: str = ""
    role: str = "buyer"
    status: BidderStatus = "active"

    @property
    def can_bid(self) -> bool:
        return self.status == "active"
