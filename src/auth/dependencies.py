"""FastAPI dependencies for authentication.

Identity is owned by the platform's auth service; this API only needs to
know which organization and which user a request acts for. Both come from
the claims of an HS256 bearer token:

    {"sub": "<user id>", "organization_id": "<uuid>", "aud": "feedbackflow-api", ...}

Key dependencies:
- get_current_user: validate the bearer token -> AuthenticatedUser
"""

from __future__ import annotations

import uuid
from typing import Any

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status

from src.config import Settings, get_settings
from src.telemetry.logging import bind_organization_context, bind_user_context

log = structlog.get_logger(__name__)


class AuthenticatedUser:
    """Lightweight container passed to route handlers."""

    def __init__(self, user_id: str, organization_id: uuid.UUID, claims: dict[str, Any]) -> None:
        self.id = user_id
        self.organization_id = organization_id
        self.claims = claims

    @property
    def email(self) -> str | None:
        return self.claims.get("email")


def decode_token(token: str, settings: Settings) -> dict[str, Any]:
    """Validate signature, expiry and audience of a bearer token.

    Raises:
        jwt.InvalidTokenError: on any validation failure.
    """
    return jwt.decode(
        token,
        settings.jwt_secret.get_secret_value(),
        algorithms=["HS256"],
        audience=settings.jwt_audience,
        options={"require": ["sub", "exp"]},
    )


async def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    """Resolve the bearer token to the acting user and organization.

    Raises HTTP 401 for a missing, invalid or expired token, or one without
    an organization claim.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        claims = decode_token(token, settings)
    except jwt.InvalidTokenError as exc:
        log.info("auth.token_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    raw_org_id = claims.get("organization_id")
    if not raw_org_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing organization_id claim",
        )

    try:
        organization_id = uuid.UUID(str(raw_org_id))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid organization_id in token claims",
        ) from exc

    bind_organization_context(organization_id)
    bind_user_context(claims["sub"])
    return AuthenticatedUser(user_id=str(claims["sub"]), organization_id=organization_id, claims=claims)
