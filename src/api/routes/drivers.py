"""
Driver endpoints
================

POST /api/v1/drivers                 -- register the caller as a driver
PUT  /api/v1/drivers/me/availability -- go online (with location) / offline
PUT  /api/v1/drivers/me/location     -- location ping while online
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import Actor, get_actor, get_engine, require_role
from src.api.middleware import limiter
from src.api.schemas import (
    AvailabilityRequest,
    DriverRegisterRequest,
    DriverResponse,
    LocationUpdateRequest,
)
from src.domain.enums import ActorRole
from src.services.dispatch import DispatchEngine

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("", status_code=201, response_model=DriverResponse, summary="Register as a driver")
@limiter.limit("100/minute")
async def register_driver(
    request: Request,
    body: DriverRegisterRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    driver = await engine.register_driver(
        actor.user_id,
        body.vehicle_class,
        vehicle_model=body.vehicle_model,
        vehicle_color=body.vehicle_color,
        license_plate=body.license_plate,
    )
    return DriverResponse.from_domain(driver)


@router.put("/me/availability", response_model=DriverResponse, summary="Toggle availability")
@limiter.limit("100/minute")
async def set_availability(
    request: Request,
    body: AvailabilityRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    driver = await engine.set_driver_availability(
        actor.user_id, body.available, body.location()
    )
    return DriverResponse.from_domain(driver)


@router.put("/me/location", response_model=DriverResponse, summary="Update current location")
@limiter.limit("100/minute")
async def update_location(
    request: Request,
    body: LocationUpdateRequest,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    require_role(actor, ActorRole.DRIVER)
    driver = await engine.update_driver_location(actor.user_id, body.to_domain())
    return DriverResponse.from_domain(driver)
