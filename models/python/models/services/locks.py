"""
Per-auction bid serialization for a single process.

Bids on the same auction queue behind one asyncio.Lock; bids on different
auctions never wait for each other. Cross-process safety comes from the
conditional ledger commit, not from this lock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from models.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


class AuctionLocks:
    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def _checkout(self, auction_id: str) -> asyncio.Lock:
        lock = self._locks.get(auction_id)
        if lock is None:
            lock = self._locks[auction_id] = asyncio.Lock()
        self._holders[auction_id] = self._holders.get(auction_id, 0) + 1
        return lock

    def _checkin(self, auction_id: str) -> None:
        remaining = self._holders[auction_id] - 1
        if remaining:
            self._holders[auction_id] = remaining
        else:
            # nobody holds or waits; drop so idle auctions don't accumulate
            del self._holders[auction_id]
            del self._locks[auction_id]

    def waiting(self, auction_id: str) -> int:
        """Number of callers holding or queued on the auction's lock."""
        return self._holders.get(auction_id, 0)

    @asynccontextmanager
    async def hold(self, auction_id: str) -> AsyncIterator[None]:
        """
        Hold the auction's lock for the duration of the block.

        Usage:
            async with locks.hold(auction_id):
                ...read, decide, commit...

        Raises LockTimeoutError if the lock is not acquired in time.
        """
        lock = self._checkout(auction_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                logger.warning(f"Timed out after {self.timeout_seconds}s waiting for bid lock on auction {auction_id}")
                raise LockTimeoutError(
                    f"Auction {auction_id} is busy, please retry", cause=e
                ) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(auction_id)
