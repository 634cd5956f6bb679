from datetime import timedelta
from unittest.mock import MagicMock
from uuid import uuid4

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.shared.core.auth import (
    CurrentUser,
    create_access_token,
    decode_jwt,
    get_current_user,
    requires_role,
)
from app.shared.core.pricing import PricingTier
from app.models.profile import UserRole


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_create_and_decode_token():
    user_id = uuid4()
    token = create_access_token({"sub": str(user_id), "email": "a@example.com"})
    payload = decode_jwt(token)
    assert payload["sub"] == str(user_id)
    assert payload["aud"] == "authenticated"
    assert payload["iss"] == "supabase"


def test_decode_expired_token():
    token = create_access_token({"sub": "x", "email": "a@example.com"}, timedelta(seconds=-5))
    with pytest.raises(HTTPException) as exc_info:
        decode_jwt(token)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Token has expired"


def test_decode_tampered_token():
    token = jwt.encode(
        {"sub": "x", "email": "a@example.com", "aud": "authenticated"},
        "another-secret-that-is-long-enough-123",
        algorithm="HS256",
    )
    with pytest.raises(HTTPException) as exc_info:
        decode_jwt(token)
    assert exc_info.value.detail == "Invalid token"


@pytest.mark.asyncio
async def test_get_current_user_loads_profile_entitlements(db, profile_factory):
    profile = await profile_factory("explorer", stripe_customer_id="cus_auth")
    token = create_access_token({"sub": str(profile.id), "email": profile.email})
    request = MagicMock()

    user = await get_current_user(request, _credentials(token), db)

    assert user.id == profile.id
    assert user.tier is PricingTier.EXPLORER
    assert user.role is UserRole.USER
    assert user.stripe_customer_id == "cus_auth"
    assert request.state.user_id == profile.id
    assert request.state.tier is PricingTier.EXPLORER


@pytest.mark.asyncio
async def test_get_current_user_rejects_missing_credentials(db):
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(MagicMock(), None, db)
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_get_current_user_rejects_unknown_profile(db):
    token = create_access_token({"sub": str(uuid4()), "email": "ghost@example.com"})
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(MagicMock(), _credentials(token), db)
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_get_current_user_rejects_bad_subject(db):
    token = create_access_token({"sub": "not-a-uuid", "email": "a@example.com"})
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(MagicMock(), _credentials(token), db)
    assert exc_info.value.detail == "Invalid token payload"


def test_requires_role():
    checker = requires_role("admin")
    admin = CurrentUser(id=uuid4(), email="admin@example.com", role=UserRole.ADMIN)
    assert checker(user=admin) is admin

    user = CurrentUser(id=uuid4(), email="u@example.com")
    with pytest.raises(HTTPException) as exc_info:
        checker(user=user)
    assert exc_info.value.status_code == 403

    assert requires_role("user")(user=user) is user
