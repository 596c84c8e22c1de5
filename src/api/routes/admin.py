"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health                      -- health check
PUT /api/v1/admin/drivers/{driver_id}/approval -- approve / suspend a driver
POST /api/v1/admin/reconcile                  -- run one reconciliation sweep now
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import Actor, get_actor, get_engine, require_role
from src.api.middleware import limiter
from src.api.schemas import ApprovalRequest, DriverResponse, HealthResponse, ReconcileResponse
from src.domain.enums import ActorRole
from src.services.dispatch import DispatchEngine

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(engine: DispatchEngine = Depends(get_engine)):
    return HealthResponse(live_solicitations=len(engine.solicitations))


@router.put(
    "/drivers/{driver_id}/approval",
    response_model=DriverResponse,
    summary="Set a driver's approval status",
)
@limiter.limit("100/minute")
async def set_driver_approval(
    request: Request,
    driver_id: str,
    body: ApprovalRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.ADMIN)
    driver = await engine.approve_driver(driver_id, body.approval)
    return DriverResponse.from_domain(driver)


@router.post("/reconcile", response_model=ReconcileResponse, summary="Restart orphaned moves")
@limiter.limit("100/minute")
async def reconcile(
    request: Request,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.ADMIN)
    return ReconcileResponse(restarted=await engine.reconcile_pending())
