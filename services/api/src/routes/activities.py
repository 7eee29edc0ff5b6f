"""
API endpoints for bids and auction activity.

POST   /auction-activities/bid                          - place a bid
GET    /auction-activities/                             - all activity, paginated
GET    /auction-activities/users/{user_id}/auctions     - auctions a user bid on
GET    /auction-activities/{id}/participation           - leaderboard
GET    /auction-activities/{id}/stats                   - bid statistics
GET    /auction-activities/{id}/highest                 - current leader
GET    /auction-activities/{id}/history/{user_id}       - a user's bids, newest first
"""

from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.engine.leaderboard import BidStats
from models.engine.records import BidLedgerEntry, BidType
from models.exceptions import AuctionError
from models.services.orchestrator import (
    ActivityPage,
    AuctionOrchestrator,
    AuctionParticipation,
    CurrentHighestBid,
    PlaceBidOutcome,
    UserAuctionsPage,
)
from utils import log

from .dependencies import ApiResponse, get_orchestrator, http_error

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auction-activities", tags=["auction-activities"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class PlaceBidRequest(BaseModel):
    auction_id: str
    user_id: str
    bid_amount: float = Field(gt=0)
    bid_type: BidType = "initial"


# ---------------------------------------------------------------------------
# POST /auction-activities/bid - place a bid
# ---------------------------------------------------------------------------

@router.post("/bid", response_model=ApiResponse[PlaceBidOutcome], status_code=201)
async def route_place_bid(
    body: PlaceBidRequest,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    """Place a bid. The bid either becomes the new leader or is rejected."""
    try:
        outcome = await orchestrator.place_bid(
            auction_id=body.auction_id,
            user_id=body.user_id,
            bid_amount=body.bid_amount,
            bid_type=body.bid_type,
        )
    except AuctionError as e:
        raise http_error(e)

    return ApiResponse(message="Bid placed successfully", data=outcome)


# ---------------------------------------------------------------------------
# GET /auction-activities/ - all activity
# ---------------------------------------------------------------------------

@router.get("/", response_model=ApiResponse[ActivityPage])
async def route_activities(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        activities = await orchestrator.get_all_auction_activities(page, limit)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="Auction activities retrieved successfully", data=activities)


# ---------------------------------------------------------------------------
# GET /auction-activities/users/{user_id}/auctions
# ---------------------------------------------------------------------------

@router.get("/users/{user_id}/auctions", response_model=ApiResponse[UserAuctionsPage])
async def route_user_bid_auctions(
    user_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        auctions = await orchestrator.get_user_bid_auctions(user_id, page, limit)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="User bid auctions retrieved successfully", data=auctions)


# ---------------------------------------------------------------------------
# Per-auction reads
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/participation", response_model=ApiResponse[AuctionParticipation])
async def route_participation(
    auction_id: str,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        participation = await orchestrator.get_auction_participation(auction_id)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="Auction participation retrieved successfully", data=participation)


@router.get("/{auction_id}/stats", response_model=ApiResponse[BidStats])
async def route_stats(
    auction_id: str,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        stats = await orchestrator.get_auction_stats(auction_id)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="Auction statistics retrieved successfully", data=stats)


@router.get("/{auction_id}/highest", response_model=ApiResponse[CurrentHighestBid])
async def route_highest(
    auction_id: str,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        highest = await orchestrator.get_current_highest_bid(auction_id)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="Current highest bid retrieved successfully", data=highest)


@router.get("/{auction_id}/history/{user_id}", response_model=ApiResponse[List[BidLedgerEntry]])
async def route_user_history(
    auction_id: str,
    user_id: str,
    orchestrator: AuctionOrchestrator = Depends(get_orchestrator),
):
    try:
        history = await orchestrator.get_user_auction_history(auction_id, user_id)
    except AuctionError as e:
        raise http_error(e)
    return ApiResponse(message="User auction history retrieved successfully", data=history)
