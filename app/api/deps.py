"""API dependencies for authentication and common operations."""

from typing import Annotated

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.exceptions import AuthenticationError, Unauthorized
from app.core.idempotency import normalize_request_id
from app.core.security import user_id_from_token
from app.domain.booking_state import Actor
from app.services.booking_engine import BookingStateMachine, booking_engine

# Security scheme
security = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Actor:
    """Get the acting user from the bearer token."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    user_id = user_id_from_token(credentials.credentials)
    return Actor(user_id=user_id, is_admin=user_id in settings.admin_user_ids)


async def get_current_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Get the acting user and verify they are an admin."""
    if not actor.is_admin:
        raise Unauthorized("Admin access required")
    return actor


def get_booking_engine() -> BookingStateMachine:
    """State machine used by the request handlers."""
    return booking_engine


def get_request_id(
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> str | None:
    """Client supplied idempotency key of a mutating request."""
    return normalize_request_id(idempotency_key)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
CurrentAdmin = Annotated[Actor, Depends(get_current_admin)]
Engine = Annotated[BookingStateMachine, Depends(get_booking_engine)]
RequestId = Annotated[str | None, Depends(get_request_id)]
