from typing import Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from models.engine.auction import AuctionState


class AuctionData(BaseCouchbaseEntityData):
    item_name: str

    # Pricing (validated at creation: both strictly positive)
    start_price: float
    price_multiplication: float
    end_price: float = 0

    # Schedule
    start_date: datetime
    end_date: datetime
    end_time: datetime  # may be extended by soft close, never moved back
    extra_time: int = 0  # minutes
    extensions_count: int = 0

    # Denormalized leader (written in the same transaction as the ledger)
    highest_bid: float = 0
    current_winner: Optional[str] = None
    leading_bid_id: Optional[str] = None
    bid_count: int = 0


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"

    def to_state(self) -> AuctionState:
        d = self.data
        return AuctionState(
            id=self.id,
            item_name=d.item_name,
            start_price=d.start_price,
            price_multiplication=d.price_multiplication,
            start_date=d.start_date,
            end_date=d.end_date,
            end_time=d.end_time,
            extra_time=d.extra_time,
            highest_bid=d.highest_bid,
            current_winner=d.current_winner,
            leading_bid_id=d.leading_bid_id,
            bid_count=d.bid_count,
        )
