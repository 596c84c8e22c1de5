"""FastAPI dependency injection helpers."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, Request

from src.domain.enums import ActorRole
from src.domain.errors import Forbidden, InvalidInput
from src.services.dispatch import DispatchEngine


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: ActorRole


def get_engine(request: Request) -> DispatchEngine:
    """The process-wide engine built by the app factory or lifespan."""
    return request.app.state.engine


async def get_actor(
    x_user_id: str = Header(..., min_length=1),
    x_user_role: str = Header("customer"),
) -> Actor:
    """Caller identity; authentication happens in front of this service."""
    try:
        role = ActorRole(x_user_role.lower())
    except ValueError:
        raise InvalidInput(f"Unknown role: {x_user_role}") from None
    return Actor(user_id=x_user_id, role=role)


def require_role(actor: Actor, *roles: ActorRole) -> Actor:
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise Forbidden(f"This action requires role: {allowed}.")
    return actor
