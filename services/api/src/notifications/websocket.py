"""
WebSocket broadcaster for auction rooms.

Clients join the room of one auction (``auction:{id}``) and receive every
event the orchestrator emits for it as a JSON message.

Emitting only queues the message: a background sender per room delivers
the queue in order, to all sockets of the room at once, each send bounded
by ``send_timeout``. Sockets that fail or time out are dropped from the
room. A bid request therefore never waits on a viewer's connection.
"""

import asyncio
from collections import deque
from typing import Deque, Dict, Set

from fastapi import WebSocket
from pydantic import BaseModel

from models.engine.events import (
    AuctionEndedEvent,
    LeaderboardUpdateEvent,
    NewBidEvent,
    TimeExtensionEvent,
)
from utils import log

logger = log.get_logger(__name__)


def room_name(auction_id: str) -> str:
    return f"auction:{auction_id}"


class ConnectionManager:
    """Tracks sockets per auction room and implements ``NotificationSink``."""

    def __init__(self, send_timeout: float = 2.0):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self.send_timeout = send_timeout
        self._outboxes: Dict[str, Deque[dict]] = {}
        self._senders: Dict[str, asyncio.Task] = {}

    async def connect(self, websocket: WebSocket, auction_id: str) -> None:
        await websocket.accept()
        self.active_connections.setdefault(auction_id, set()).add(websocket)
        logger.info(f"Client joined {room_name(auction_id)} ({self.viewer_count(auction_id)} viewers)")

    def disconnect(self, websocket: WebSocket, auction_id: str) -> None:
        connections = self.active_connections.get(auction_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            del self.active_connections[auction_id]
        logger.info(f"Client left {room_name(auction_id)}")

    def viewer_count(self, auction_id: str) -> int:
        return len(self.active_connections.get(auction_id, ()))

    async def send_personal_message(self, websocket: WebSocket, message: dict) -> None:
        await websocket.send_json(message)

    async def _send(self, websocket: WebSocket, auction_id: str, message: dict) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Dropping slow socket in {room_name(auction_id)}")
        except Exception as e:
            logger.warning(f"Dropping socket in {room_name(auction_id)}: {e}")
        return False

    async def broadcast(self, auction_id: str, message: dict) -> int:
        """Send *message* to every socket in the room; returns how many received it."""
        connections = list(self.active_connections.get(auction_id, ()))
        if not connections:
            return 0

        sent = await asyncio.gather(*(self._send(ws, auction_id, message) for ws in connections))
        for websocket, ok in zip(connections, sent):
            if not ok:
                self.disconnect(websocket, auction_id)
        return sum(sent)

    # ---- ordered background delivery ----

    async def _deliver(self, auction_id: str) -> None:
        outbox = self._outboxes[auction_id]
        try:
            while outbox:
                message = outbox.popleft()
                delivered = await self.broadcast(auction_id, message)
                logger.debug(f"{message['type']} emitted to {delivered} clients in {room_name(auction_id)}")
        finally:
            self._senders.pop(auction_id, None)
            if not outbox:
                self._outboxes.pop(auction_id, None)

    async def _emit(self, auction_id: str, event: BaseModel) -> None:
        self._outboxes.setdefault(auction_id, deque()).append(event.model_dump(mode="json"))
        if auction_id not in self._senders:
            self._senders[auction_id] = asyncio.create_task(self._deliver(auction_id))

    async def flush(self) -> None:
        """Wait until every queued message has been delivered."""
        while self._senders:
            await asyncio.gather(*list(self._senders.values()))

    async def close(self) -> None:
        for task in list(self._senders.values()):
            task.cancel()
        await asyncio.gather(*list(self._senders.values()), return_exceptions=True)
        self._senders.clear()
        self._outboxes.clear()

    # ---- NotificationSink ----

    async def emit_new_bid(self, auction_id: str, event: NewBidEvent) -> None:
        await self._emit(auction_id, event)

    async def emit_leaderboard_update(self, auction_id: str, event: LeaderboardUpdateEvent) -> None:
        await self._emit(auction_id, event)

    async def emit_time_extension(self, auction_id: str, event: TimeExtensionEvent) -> None:
        await self._emit(auction_id, event)

    async def emit_auction_ended(self, auction_id: str, event: AuctionEndedEvent) -> None:
        await self._emit(auction_id, event)
