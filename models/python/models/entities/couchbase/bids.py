from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

from models.engine.records import BidLedgerEntry, BidType


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    user_id: str
    bid_amount: float
    bid_type: BidType = "initial"
    is_active: bool = True
    bid_time: datetime
    sequence: int = 0


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"

    def to_entry(self) -> BidLedgerEntry:
        d = self.data
        return BidLedgerEntry(
            id=self.id,
            auction_id=d.auction_id,
            user_id=d.user_id,
            bid_amount=d.bid_amount,
            bid_type=d.bid_type,
            is_active=d.is_active,
            bid_time=d.bid_time,
            sequence=d.sequence,
        )
