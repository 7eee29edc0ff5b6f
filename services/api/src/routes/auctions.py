"""
API endpoints for auction lifecycle.

POST   /auctions/              - create an auction
GET    /auctions/{id}/status   - live status, time left, next valid bid
POST   /auctions/{id}/result   - announce the winner of an ended auction
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.engine.events import AuctionEndedEvent
from models.exceptions import AuctionError
from models.operations.auctions import auction_create
from models.services.orchestrator import AuctionOrchestrator, AuctionStatusView
from utils import log

from .dependencies import ApiResponse, get_orchestrator, http_error

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    item_name: str
    start_price: float
    price_multiplication: float
    end_price: float = 0
    start_date: datetime
    end_date: datetime
    end_time: Optional[datetime] = None  # defaults to end_date
    extra_time: int = Field(default=0, description="Soft-close window in minutes")


class AuctionResponse(BaseModel):
    id: str
    item_name: str
    start_price: float
    price_multiplication: float
    end_price: float
    start_date: datetime
    end_date: datetime
    end_time: datetime
    extra_time: int
    extensions_count: int
    highest_bid: float
    current_winner: Optional[str] = None
    bid_count: int


def _auction_to_response(auction) -> AuctionResponse:
    d = auction.data
    return AuctionResponse(id=auction.id, **d.model_dump(exclude={"created_at", "updated_at", "leading_bid_id"}))


# ---------------------------------------------------------------------------
# POST /auctions/ - create auction
# ---------------------------------------------------------------------------

@router.post("/", response_model=ApiResponse[AuctionResponse], status_code=201)
async def route_auction_create(body: CreateAuctionRequest):
    """Create an auction. Rejects non-positive prices and inverted schedules."""
    try:
        auction = await auction_create(
            item_name=body.item_name,
            start_price=body.start_price,
            price_multiplication=body.price_multiplication,
            end_price=body.end_price,
            start_date=body.start_date,
            end_date=body.end_date,
            end_time=body.end_time,
            extra_time=body.extra_time,
        )
    except AuctionError as e:
        raise http_error(e)

    return ApiResponse(message="Auction created successfully", data=_auction_to_response(auction))


# ---------------------------------------------------------------------------
# GET /auctions/{id}/status
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/status", response_model=ApiResponse[AuctionStatusView])
async def route_auction_status(
    auction_id: str,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        status = await orchestrator.get_auction_status(auction_id)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="Auction status retrieved successfully", data=status)


# ---------------------------------------------------------------------------
# POST /auctions/{id}/result
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/result", response_model=ApiResponse[AuctionEndedEvent])
async def route_auction_result(
    auction_id: str,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    """Determine the winner once the auction has ended and notify the room."""
    try:
        result = await orchestrator.announce_auction_result(auction_id)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="Auction result announced", data=result)
