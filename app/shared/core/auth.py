import jwt
import hashlib
from functools import lru_cache
from typing import Any, Callable, Optional, cast
from uuid import UUID
from fastapi import HTTPException, Depends, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timedelta, timezone

from app.shared.core.config import get_settings
from app.shared.db.session import get_db
from app.models.profile import Profile, UserRole
from app.shared.core.pricing import PricingTier, normalize_tier

logger = structlog.get_logger()

__all__ = [
    "CurrentUser",
    "create_access_token",
    "decode_jwt",
    "get_current_user",
    "requires_role",
    "UserRole",
    "PricingTier",
]

security = HTTPBearer(auto_error=False)


def _hash_email(email: str | None) -> str | None:
    if not email:
        return None
    normalized = email.strip().lower()
    return hashlib.sha256(normalized.encode()).hexdigest()[:12]


def create_access_token(
    data: dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """
    Generate a JWT shaped like the ones Supabase issues.
    Used by tests and local tooling; production tokens come from Supabase.
    """
    settings = get_settings()
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=60)

    if "aud" not in to_encode:
        to_encode["aud"] = "authenticated"
    if "iss" not in to_encode:
        to_encode["iss"] = "supabase"

    to_encode.update({"exp": expire})

    if not settings.SUPABASE_JWT_SECRET:
        raise ValueError("SUPABASE_JWT_SECRET is not configured")

    return jwt.encode(to_encode, settings.SUPABASE_JWT_SECRET, algorithm="HS256")


class CurrentUser(BaseModel):
    """
    Represents the authenticated user: JWT identity plus profile entitlements.
    """

    id: UUID
    email: str
    role: UserRole = UserRole.USER
    tier: PricingTier = PricingTier.FREE
    subscription_status: str = "active"
    stripe_customer_id: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def decode_jwt(token: str) -> dict[str, Any]:
    """
    Decode and verify a Supabase JWT token.

    Security:
    - HS256 algorithm must match Supabase's signing algorithm
    - Rejects expired tokens automatically
    - Rejects tampered tokens (signature mismatch)

    Raises:
        HTTPException 401 if token is invalid
    """
    settings = get_settings()

    if not settings.SUPABASE_JWT_SECRET:
        logger.error("jwt_secret_missing_in_decode")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication is not configured",
        )

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience="authenticated",
        )
        return cast(dict[str, Any], payload)

    except jwt.ExpiredSignatureError:
        logger.warning("jwt_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


def _parse_role(value: Any) -> UserRole:
    try:
        return UserRole(str(value or UserRole.USER.value).lower())
    except ValueError:
        return UserRole.USER


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """
    JWT + profile lookup. For protected routes.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_jwt(credentials.credentials)
    user_id = payload.get("sub")
    email = payload.get("email")

    if not user_id or not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        user_uuid = UUID(str(user_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    profile = (
        await db.execute(select(Profile).where(Profile.id == user_uuid))
    ).scalar_one_or_none()

    if profile is None:
        logger.warning("auth_profile_not_found", user_id=str(user_uuid))
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Profile not found.")

    tier = normalize_tier(profile.subscription_tier)
    role = _parse_role(profile.role)

    # Downstream rate limiting keys off these
    request.state.user_id = user_uuid
    request.state.tier = tier

    logger.info(
        "user_authenticated",
        user_id=str(user_uuid),
        email_hash=_hash_email(str(email)),
        role=role.value,
        tier=tier.value,
    )

    return CurrentUser(
        id=user_uuid,
        email=str(email),
        role=role,
        tier=tier,
        subscription_status=profile.subscription_status,
        stripe_customer_id=profile.stripe_customer_id,
        full_name=profile.full_name,
    )


@lru_cache(maxsize=32)
def requires_role(required_role: str) -> Callable[[CurrentUser], CurrentUser]:
    """
    FastAPI dependency for RBAC.

    Usage:
        @router.get("/admin-only")
        async def admin_only(user: CurrentUser = Depends(requires_role("admin"))):
            ...

    Access Levels:
    - admin: billing operations, webhook replay, system alerts
    - user: own profile and subscription
    """

    def role_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        role_hierarchy = {UserRole.ADMIN: 50, UserRole.USER: 10}

        user_level = role_hierarchy.get(user.role, 0)
        required_level = role_hierarchy.get(_parse_role(required_role), 10)

        if user_level < required_level:
            logger.warning(
                "insufficient_permissions",
                user_id=str(user.id),
                user_role=user.role.value,
                required_role=required_role,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required role: {required_role}",
            )

        return user

    return role_checker
