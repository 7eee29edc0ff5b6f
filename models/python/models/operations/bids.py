"""
Bid ledger operations.

Reads are N1QL queries over the bids collection at REQUEST_PLUS
consistency, so a read issued after a commit always sees it. The leader
commit runs as a Couchbase transaction so demoting the previous leader,
inserting the new entry, refreshing the auction's cached leader and any
soft-close extension land together or not at all.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from couchbase.exceptions import CouchbaseException

from clients.couchbase import get_cluster
from models.engine.clock import ensure_utc
from models.engine.records import BidLedgerEntry
from models.entities.couchbase.auctions import Auction, AuctionData
from models.entities.couchbase.bids import Bid, BidData
from models.exceptions import LeaderChangedError, StorageError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def bid_get_highest_for_auction(auction_id: str) -> Optional[Bid]:
    bids = await Bid.select(
        "auction_id = $auction_id",
        "ORDER BY bid_amount DESC, `sequence` ASC LIMIT 1",
        consistent=True,
        auction_id=auction_id,
    )
    return bids[0] if bids else None


async def bid_get_by_auction(auction_id: str) -> List[Bid]:
    """All bids for an auction in ledger order."""
    return await Bid.select(
        "auction_id = $auction_id",
        "ORDER BY `sequence` ASC, bid_time ASC",
        consistent=True,
        auction_id=auction_id,
    )


async def bid_get_by_user(user_id: str, auction_id: Optional[str] = None) -> List[Bid]:
    """A user's bids, most recent first, optionally scoped to one auction."""
    where = "user_id = $user_id"
    params = {"user_id": user_id}
    if auction_id:
        where += " AND auction_id = $auction_id"
        params["auction_id"] = auction_id
    return await Bid.select(where, "ORDER BY bid_time DESC", consistent=True, **params)


async def bid_get_page(offset: int = 0, limit: int = 10) -> List[Bid]:
    return await Bid.select(
        "1=1",
        f"ORDER BY bid_time DESC LIMIT {int(limit)} OFFSET {int(offset)}",
        consistent=True,
    )


async def bid_count(auction_id: Optional[str] = None) -> int:
    if auction_id:
        return await Bid.count("auction_id = $auction_id", consistent=True, auction_id=auction_id)
    return await Bid.count(consistent=True)


# ---------------------------------------------------------------------------
# Leader commit (transactional)
# ---------------------------------------------------------------------------

async def bid_commit_leading(
    auction_id: str,
    previous_bid_id: Optional[str],
    entry: BidLedgerEntry,
    new_end_time: Optional[datetime] = None,
) -> Bid:
    """
    Record *entry* as the new leading bid of *auction_id*.

    Transaction flow:
    1. Read the auction; abort if its leading_bid_id is not *previous_bid_id*
    2. Flip the previous leader to is_active=False / bid_type=outbid
    3. Insert the new bid with the next ledger sequence
    4. Update the auction's highest_bid, current_winner, leading_bid_id, bid_count,
       and move end_time to *new_end_time* when that is later than the stored one

    Raises LeaderChangedError when step 1 fails and StorageError for any
    other transaction failure.
    """
    cluster = await get_cluster()
    auctions = await Auction.get_keyspace().get_collection()
    bids = await Bid.get_keyspace().get_collection()

    key = entry.id or str(uuid.uuid4())
    lost_race = False
    written: dict = {}

    async def _txn(ctx):
        nonlocal lost_race
        lost_race = False

        auction_doc = await ctx.get(auctions, auction_id)
        auction = auction_doc.content_as[dict]
        if auction.get("leading_bid_id") != previous_bid_id:
            lost_race = True
            raise LeaderChangedError(
                f"Leader of auction {auction_id} moved from {previous_bid_id} "
                f"to {auction.get('leading_bid_id')}"
            )

        now = datetime.now(timezone.utc)
        if previous_bid_id:
            prev_doc = await ctx.get(bids, previous_bid_id)
            prev = prev_doc.content_as[dict]
            prev["is_active"] = False
            prev["bid_type"] = "outbid"
            prev["updated_at"] = now.isoformat()
            await ctx.replace(prev_doc, prev)

        data = BidData(
            **entry.model_dump(exclude={"id", "sequence", "is_active"}),
            is_active=True,
            sequence=auction.get("bid_count", 0) + 1,
            created_at=now,
            updated_at=now,
        )
        await ctx.insert(bids, key, Bid.to_document(data))

        auction["highest_bid"] = data.bid_amount
        auction["current_winner"] = data.user_id
        auction["leading_bid_id"] = key
        auction["bid_count"] = data.sequence
        if new_end_time is not None:
            current_end = ensure_utc(AuctionData.model_validate(auction).end_time)
            if ensure_utc(new_end_time) > current_end:
                auction["end_time"] = ensure_utc(new_end_time).isoformat()
                auction["extensions_count"] = auction.get("extensions_count", 0) + 1
        auction["updated_at"] = now.isoformat()
        await ctx.replace(auction_doc, auction)

        written["data"] = data

    try:
        await cluster.transactions.run(_txn)
    except LeaderChangedError:
        raise
    except CouchbaseException as e:
        if lost_race:
            raise LeaderChangedError(f"Leader of auction {auction_id} changed", cause=e) from e
        logger.error(f"Bid commit on auction {auction_id} failed: {e}")
        raise StorageError(f"Failed to record bid on auction {auction_id}", cause=e) from e

    return Bid(id=key, data=written["data"])


# ---------------------------------------------------------------------------
# Port adapter
# ---------------------------------------------------------------------------

def _entries(bids: Iterable[Bid]) -> List[BidLedgerEntry]:
    return [b.to_entry() for b in bids]


class CouchbaseBidLedger:
    """``BidLedger`` backed by the bids collection."""

    async def highest_for(self, auction_id: str) -> Optional[BidLedgerEntry]:
        try:
            bid = await bid_get_highest_for_auction(auction_id)
        except CouchbaseException as e:
            raise StorageError(f"Failed to read highest bid for {auction_id}", cause=e) from e
        return bid.to_entry() if bid else None

    async def all_for(self, auction_id: str) -> List[BidLedgerEntry]:
        try:
            return _entries(await bid_get_by_auction(auction_id))
        except CouchbaseException as e:
            raise StorageError(f"Failed to read bids for {auction_id}", cause=e) from e

    async def all_for_user(self, user_id: str) -> List[BidLedgerEntry]:
        try:
            return _entries(await bid_get_by_user(user_id))
        except CouchbaseException as e:
            raise StorageError(f"Failed to read bids of user {user_id}", cause=e) from e

    async def page(self, offset: int, limit: int) -> List[BidLedgerEntry]:
        try:
            return _entries(await bid_get_page(offset, limit))
        except CouchbaseException as e:
            raise StorageError("Failed to read bid activity", cause=e) from e

    async def count(self) -> int:
        try:
            return await bid_count()
        except CouchbaseException as e:
            raise StorageError("Failed to count bids", cause=e) from e

    async def commit_leading_bid(
        self,
        auction_id: str,
        previous: Optional[BidLedgerEntry],
        entry: BidLedgerEntry,
        new_end_time: Optional[datetime] = None,
    ) -> BidLedgerEntry:
        bid = await bid_commit_leading(
            auction_id, previous.id if previous else None, entry, new_end_time=new_end_time
        )
        return bid.to_entry()
