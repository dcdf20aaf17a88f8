"""Tests for bearer token validation.

Tests cover:
- Valid token -> claims / AuthenticatedUser
- Invalid signature, expired, wrong audience, missing sub -> rejected
- Organization claim required and must be a UUID
- Log context bound for the rest of the request
"""

from __future__ import annotations

import time

import jwt
import pytest
import structlog
from fastapi import HTTPException
from starlette.requests import Request

from src.auth.dependencies import AuthenticatedUser, decode_token, get_current_user
from tests.conftest import TEST_JWT_AUDIENCE, TEST_JWT_SECRET, make_token


def _request(authorization: str | None) -> Request:
    headers = []
    if authorization is not None:
        headers.append((b"authorization", authorization.encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


class TestDecodeToken:
    """Signature, expiry and audience checks."""

    def test_valid_token(self, fake_settings, org_id) -> None:
        claims = decode_token(make_token("hr-admin-1", str(org_id)), fake_settings)
        assert claims["sub"] == "hr-admin-1"
        assert claims["organization_id"] == str(org_id)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"secret": "WRONG_SECRET"},
            {"expires_in": -10},
            {"audience": "another-service"},
        ],
        ids=["wrong-signature", "expired", "wrong-audience"],
    )
    def test_rejected(self, fake_settings, org_id, kwargs) -> None:
        with pytest.raises(jwt.InvalidTokenError):
            decode_token(make_token("hr-admin-1", str(org_id), **kwargs), fake_settings)

    def test_missing_subject_rejected(self, fake_settings, org_id) -> None:
        token = jwt.encode(
            {
                "organization_id": str(org_id),
                "aud": TEST_JWT_AUDIENCE,
                "exp": int(time.time()) + 60,
            },
            TEST_JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(jwt.MissingRequiredClaimError):
            decode_token(token, fake_settings)

    def test_other_algorithms_rejected(self, fake_settings, org_id) -> None:
        token = jwt.encode(
            {"sub": "x", "organization_id": str(org_id), "aud": TEST_JWT_AUDIENCE, "exp": int(time.time()) + 60},
            TEST_JWT_SECRET,
            algorithm="HS512",
        )
        with pytest.raises(jwt.InvalidAlgorithmError):
            decode_token(token, fake_settings)


class TestGetCurrentUser:
    """The FastAPI dependency resolving the acting user."""

    @pytest.mark.asyncio
    async def test_resolves_user_and_binds_log_context(self, fake_settings, org_id) -> None:
        structlog.contextvars.clear_contextvars()
        token = make_token("hr-admin-1", str(org_id), email="dana@example.com")

        user = await get_current_user(_request(f"Bearer {token}"), settings=fake_settings)

        assert isinstance(user, AuthenticatedUser)
        assert user.id == "hr-admin-1"
        assert user.organization_id == org_id
        assert user.email == "dana@example.com"
        context = structlog.contextvars.get_contextvars()
        assert context["organization_id"] == str(org_id)
        assert context["user_id"] == "hr-admin-1"
        structlog.contextvars.clear_contextvars()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Basic dXNlcjpwYXNz", "Bearer not-a-jwt"])
    async def test_missing_or_malformed_header(self, fake_settings, header) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_request(header), settings=fake_settings)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_organization_claim_required(self, fake_settings) -> None:
        token = make_token("hr-admin-1", None)
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_request(f"Bearer {token}"), settings=fake_settings)
        assert exc_info.value.detail == "Token missing organization_id claim"

    @pytest.mark.asyncio
    async def test_organization_claim_must_be_uuid(self, fake_settings) -> None:
        token = make_token("hr-admin-1", "acme")
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_request(f"Bearer {token}"), settings=fake_settings)
        assert exc_info.value.detail == "Invalid organization_id in token claims"
