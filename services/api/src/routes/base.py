from fastapi import APIRouter
from utils import log

from .activities import router as activities_router
from .auctions import router as auctions_router
from .websocket import router as websocket_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(auctions_router)
router.include_router(activities_router)

# WebSocket rooms live outside the /api prefix
ws_router = APIRouter()
ws_router.include_router(websocket_router)


@router.get("/health", tags=["dev"])
async def route_health():
    return {"status": "ok"}
