import logging

from models.engine.events import (
    AuctionEndedEvent,
    LeaderboardUpdateEvent,
    NewBidEvent,
    TimeExtensionEvent,
)

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """``NotificationSink`` that only writes events to the log.

    Used when no live transport is wired, e.g. for batch jobs.
    """

    async def emit_new_bid(self, auction_id: str, event: NewBidEvent) -> None:
        logger.info(f"[{auction_id}] new bid {event.bid_amount} by {event.user_id}")

    async def emit_leaderboard_update(self, auction_id: str, event: LeaderboardUpdateEvent) -> None:
        logger.debug(
            f"[{auction_id}] leaderboard: {event.total_participants} participants, "
            f"highest {event.current_highest_bid}"
        )

    async def emit_time_extension(self, auction_id: str, event: TimeExtensionEvent) -> None:
        logger.info(f"[{auction_id}] extended by {event.extension_minutes}m to {event.new_end_time.isoformat()}")

    async def emit_auction_ended(self, auction_id: str, event: AuctionEndedEvent) -> None:
        winner = event.winner.user_id if event.winner else "none"
        logger.info(f"[{auction_id}] ended, winner: {winner}")
