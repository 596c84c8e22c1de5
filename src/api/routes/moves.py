"""
Move endpoints
==============

POST /api/v1/moves/estimate         -- price quote, nothing persisted
POST /api/v1/moves                  -- create a move and start dispatch (201)
GET  /api/v1/moves/mine             -- caller's moves, newest first
GET  /api/v1/moves/{move_id}        -- move detail (parties or admin only)
POST /api/v1/moves/{move_id}/accept -- solicited driver accepts
POST /api/v1/moves/{move_id}/reject -- solicited driver declines
PUT  /api/v1/moves/{move_id}/progress -- assigned driver advances status
PUT  /api/v1/moves/{move_id}/location -- assigned driver's position while on the move
POST /api/v1/moves/{move_id}/cancel -- customer, driver or admin cancels
POST /api/v1/moves/{move_id}/rating -- customer rates the driver of a delivered move
"""

from fastapi import APIRouter, Depends, Request, Response

from src.api.dependencies import Actor, get_actor, get_engine, require_role
from src.api.middleware import limiter
from src.api.schemas import (
    CancelRequest,
    DriverRatingResponse,
    ErrorResponse,
    EstimateRequest,
    LocationUpdateRequest,
    MoveCreateRequest,
    MoveDetailResponse,
    MoveResponse,
    ProgressRequest,
    QuoteResponse,
    RatingRequest,
    RejectRequest,
    TrackingResponse,
)
from src.domain.enums import ActorRole
from src.services.dispatch import DispatchEngine

router = APIRouter(prefix="/moves", tags=["moves"])


@router.post("/estimate", response_model=QuoteResponse, summary="Estimate a move price")
@limiter.limit("100/minute")
async def estimate_move(
    request: Request,
    body: EstimateRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    quote = await engine.estimate_price(
        body.pickup.to_domain(), body.delivery.to_domain(), body.vehicle_class
    )
    return QuoteResponse.from_domain(quote)


@router.post(
    "",
    status_code=201,
    response_model=MoveResponse,
    summary="Create a move request",
    responses={409: {"model": ErrorResponse, "description": "Customer already has an active move."}},
)
@limiter.limit("100/minute")
async def create_move(
    request: Request,
    body: MoveCreateRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.CUSTOMER)
    move = await engine.create_move(
        customer_id=actor.user_id,
        pickup=body.pickup.to_domain(),
        delivery=body.delivery.to_domain(),
        vehicle_class=body.vehicle_class,
        items=[item.to_domain() for item in body.items],
        scheduled_for=body.scheduled_for,
        payment_method=body.payment_method,
    )
    return MoveResponse.from_domain(move)


@router.get("/mine", response_model=list[MoveResponse], summary="List my moves")
@limiter.limit("100/minute")
async def list_my_moves(
    request: Request,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    if actor.role == ActorRole.DRIVER:
        moves = await engine.list_moves_for_driver(actor.user_id)
    else:
        moves = await engine.list_moves_for_customer(actor.user_id)
    return [MoveResponse.from_domain(m) for m in moves]


@router.get("/{move_id}", response_model=MoveDetailResponse, summary="Get a move")
@limiter.limit("100/minute")
async def get_move(
    request: Request,
    move_id: str,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    view = await engine.get_move(move_id, actor.user_id, actor.role)
    return MoveDetailResponse.from_view(view)


@router.post(
    "/{move_id}/accept",
    response_model=MoveResponse,
    summary="Accept a solicited move",
    description=(
        "Only the currently solicited driver may accept; the move must still "
        "be PENDING with no driver, and the driver approved and available."
    ),
)
@limiter.limit("100/minute")
async def accept_move(
    request: Request,
    move_id: str,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    move = await engine.accept_move(move_id, actor.user_id)
    return MoveResponse.from_domain(move)


@router.post("/{move_id}/reject", status_code=204, summary="Decline a solicited move")
@limiter.limit("100/minute")
async def reject_move(
    request: Request,
    move_id: str,
    body: RejectRequest | None = None,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    await engine.reject_move(move_id, actor.user_id, body.reason if body else None)
    return Response(status_code=204)


@router.put("/{move_id}/progress", response_model=MoveResponse, summary="Advance move status")
@limiter.limit("100/minute")
async def advance_move(
    request: Request,
    move_id: str,
    body: ProgressRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    move = await engine.advance_move_status(
        move_id, actor.user_id, body.status, location=body.location()
    )
    return MoveResponse.from_domain(move)


@router.post("/{move_id}/cancel", response_model=MoveResponse, summary="Cancel a move")
@limiter.limit("100/minute")
async def cancel_move(
    request: Request,
    move_id: str,
    body: CancelRequest | None = None,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    move = await engine.cancel_move(
        move_id, actor.user_id, actor.role, body.reason if body else None
    )
    return MoveResponse.from_domain(move)


@router.put(
    "/{move_id}/location",
    response_model=TrackingResponse,
    summary="Report position while on a move",
)
@limiter.limit("100/minute")
async def track_move(
    request: Request,
    move_id: str,
    body: LocationUpdateRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    distance = await engine.track_move_location(move_id, actor.user_id, body.to_domain())
    return TrackingResponse(
        move_id=move_id,
        distance_to_stop_m=round(distance, 1) if distance is not None else None,
    )


@router.post("/{move_id}/rating", response_model=DriverRatingResponse, summary="Rate the driver")
@limiter.limit("100/minute")
async def rate_driver(
    request: Request,
    move_id: str,
    body: RatingRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.CUSTOMER)
    driver = await engine.rate_driver(move_id, actor.user_id, body.rate, body.comment)
    return DriverRatingResponse.from_domain(driver)
