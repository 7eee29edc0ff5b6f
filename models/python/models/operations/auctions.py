"""
Auction persistence with CAS-guarded atomic operations.

- _auction_cas_retry for atomic read-modify-write
- Exponential backoff on CASMismatchException
- auction_extend_end_time only ever moves end_time forward
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional
from datetime import datetime

from couchbase.exceptions import CASMismatchException, CouchbaseException

from models.engine.auction import AuctionState
from models.engine.clock import ensure_utc
from models.entities.couchbase.auctions import Auction, AuctionData
from models.exceptions import InvalidAuctionConfigError, StorageError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CAS-retry helper
# ---------------------------------------------------------------------------

async def _auction_cas_retry(
    auction_id: str,
    mutator: Callable[[AuctionData], Optional[str]],
    max_retries: int = 5,
) -> tuple[bool, Optional[str]]:
    """Read-modify-write an auction with CAS-guarded retry.

    *mutator* receives ``AuctionData`` and mutates it in place.  It returns
    ``None`` on success or an error string to abort early.  On
    ``CASMismatchException`` the helper re-reads and retries with
    exponential backoff (10 ms, 20 ms, 40 ms, ...).
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        auction = await Auction.get(auction_id)
        if not auction:
            return False, f"Auction {auction_id} not found"

        error = mutator(auction.data)
        if error is not None:
            return False, error

        try:
            await Auction.update(auction)
            return True, None
        except CASMismatchException:
            if attempt == max_retries:
                return False, "Concurrent update conflict, please retry"
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    return False, "Max retries exceeded"


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def validate_auction_config(
    start_price: float,
    price_multiplication: float,
    start_date: datetime,
    end_time: datetime,
    extra_time: int,
) -> None:
    if start_price <= 0:
        raise InvalidAuctionConfigError("Start price must be greater than 0")
    if price_multiplication <= 0:
        raise InvalidAuctionConfigError("Price multiplication must be greater than 0")
    if extra_time < 0:
        raise InvalidAuctionConfigError("Extra time cannot be negative")
    if ensure_utc(end_time) < ensure_utc(start_date):
        raise InvalidAuctionConfigError("End time must not be before start date")


async def auction_create(
    item_name: str,
    start_price: float,
    price_multiplication: float,
    start_date: datetime,
    end_date: datetime,
    end_time: Optional[datetime] = None,
    extra_time: int = 0,
    end_price: float = 0,
    key: Optional[str] = None,
) -> Auction:
    """Create an auction after rejecting impossible pricing or timing."""
    end_time = end_time or end_date
    validate_auction_config(start_price, price_multiplication, start_date, end_time, extra_time)

    data = AuctionData(
        item_name=item_name,
        start_price=start_price,
        price_multiplication=price_multiplication,
        end_price=end_price,
        start_date=ensure_utc(start_date),
        end_date=ensure_utc(end_date),
        end_time=ensure_utc(end_time),
        extra_time=extra_time,
    )
    auction = await Auction.create(data, key=key)
    logger.info(f"Auction {auction.id} created for '{item_name}' closing at {data.end_time.isoformat()}")
    return auction


async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def auction_get_many(auction_ids: Iterable[str]) -> List[Auction]:
    return await Auction.get_many(list(auction_ids))


# ---------------------------------------------------------------------------
# Soft close
# ---------------------------------------------------------------------------

async def auction_extend_end_time(
    auction_id: str, end_time: datetime
) -> tuple[bool, Optional[str]]:
    """Move the auction's end_time forward to *end_time*.

    An instant at or before the stored end_time is a no-op that still
    reports success, so concurrent extensions keep the latest one.
    """
    end_time = ensure_utc(end_time)

    def _mutate(d: AuctionData) -> Optional[str]:
        if end_time > ensure_utc(d.end_time):
            d.end_time = end_time
            d.extensions_count += 1
        return None

    return await _auction_cas_retry(auction_id, _mutate)


# ---------------------------------------------------------------------------
# Port adapter
# ---------------------------------------------------------------------------

class CouchbaseAuctionStore:
    """``AuctionStore`` backed by the auctions collection."""

    async def find_by_id(self, auction_id: str) -> Optional[AuctionState]:
        try:
            auction = await auction_get(auction_id)
        except CouchbaseException as e:
            raise StorageError(f"Failed to load auction {auction_id}", cause=e) from e
        return auction.to_state() if auction else None

    async def find_many(self, auction_ids: Iterable[str]) -> List[AuctionState]:
        ids = list(auction_ids)
        try:
            auctions = await auction_get_many(ids)
        except CouchbaseException as e:
            raise StorageError("Failed to load auctions", cause=e) from e
        return [a.to_state() for a in auctions]

    async def update_end_time(self, auction_id: str, end_time: datetime) -> Optional[AuctionState]:
        try:
            ok, err = await auction_extend_end_time(auction_id, end_time)
        except CouchbaseException as e:
            raise StorageError(f"Failed to extend auction {auction_id}", cause=e) from e

        if not ok:
            if err and err.endswith("not found"):
                return None
            raise StorageError(err or f"Failed to extend auction {auction_id}")
        return await self.find_by_id(auction_id)
