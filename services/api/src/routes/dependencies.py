from typing import Generic, Optional, TypeVar

from fastapi import HTTPException, Request, WebSocket
from pydantic import BaseModel

from models.exceptions import AuctionError, ServerError
from models.services.orchestrator import AuctionOrchestrator
from notifications.websocket import ConnectionManager
from utils import log

logger = log.get_logger(__name__)

DataT = TypeVar("DataT")


class ApiResponse(BaseModel, Generic[DataT]):
    """Uniform response envelope."""
    status: str = "success"
    message: str
    data: Optional[DataT] = None


def get_orchestrator(request: Request) -> AuctionOrchestrator:
    return request.app.state.orchestrator


def get_connection_manager(websocket: WebSocket) -> ConnectionManager:
    return websocket.app.state.connections


def http_error(e: AuctionError) -> HTTPException:
    """Translate a bidding error into the matching HTTP error."""
    if isinstance(e, ServerError):
        logger.error(f"{type(e).__name__}: {e.message}" + (f" (cause: {e.cause!r})" if e.cause else ""))
    return HTTPException(status_code=e.status_code, detail=e.message)
