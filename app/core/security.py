"""Bearer token verification.

Access tokens are issued by the managed auth backend; this service only
verifies them and reads the user id from the ``sub`` claim.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from app.config import settings
from app.core.exceptions import AuthenticationError


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify and decode a JWT access token."""
    options = {"verify_aud": settings.jwt_audience is not None}
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}")


def user_id_from_token(token: str) -> UUID:
    """Return the authenticated user id carried in the token subject."""
    payload = decode_access_token(token)
    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")
    try:
        return UUID(str(subject))
    except ValueError:
        raise AuthenticationError("Token subject is not a valid user id")


def create_access_token(
    user_id: UUID | str,
    expires_delta: timedelta | None = None,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Sign an access token the way the auth backend does.

    Used by local tooling and tests; production tokens come from the
    auth backend.
    """
    to_encode: dict[str, Any] = {"sub": str(user_id), **(extra_claims or {})}
    if settings.jwt_audience:
        to_encode["aud"] = settings.jwt_audience
    expire = datetime.now(UTC) + (expires_delta or timedelta(hours=1))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
