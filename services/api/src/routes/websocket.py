from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from notifications.websocket import ConnectionManager
from utils import log

from .dependencies import get_connection_manager

logger = log.get_logger(__name__)

router = APIRouter(prefix="/ws", tags=["websocket"])


@router.websocket("/auctions/{auction_id}")
async def route_auction_room(
    websocket: WebSocket,
    auction_id: str,
    connections: ConnectionManager = Depends(get_connection_manager),
):
    """Join an auction room and receive its events until the client leaves."""
    await connections.connect(websocket, auction_id)
    try:
        await connections.send_personal_message(websocket, {
            "type": "joined_auction",
            "auction_id": auction_id,
            "message": "Successfully joined auction",
            "viewers": connections.viewer_count(auction_id),
        })
        while True:
            # clients only listen; any frame is answered as a keepalive
            await websocket.receive_text()
            await connections.send_personal_message(websocket, {"type": "pong"})
    except WebSocketDisconnect:
        logger.debug(f"Client closed socket for auction {auction_id}")
    finally:
        connections.disconnect(websocket, auction_id)
