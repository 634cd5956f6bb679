"""Per-user storage quota derived from the subscription tier."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.profile import Profile
from app.shared.core.pricing import UNLIMITED, get_tier_limit, normalize_tier

logger = structlog.get_logger()

_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


@dataclass(frozen=True)
class StorageQuota:
    used: int
    limit: int  # -1 = unlimited
    remaining: int  # -1 = unlimited
    percentage: float
    can_upload: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UploadCheck:
    can_upload: bool
    quota: StorageQuota
    reason: Optional[str] = None


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    if num_bytes == 0:
        return "0 Bytes"
    if num_bytes == UNLIMITED:
        return "Unlimited"

    index = min(int(math.floor(math.log(abs(num_bytes), 1024))), len(_UNITS) - 1)
    value = round(num_bytes / (1024**index), max(decimals, 0))
    # 1.50 -> "1.5", 2.00 -> "2"
    return f"{value:g} {_UNITS[index]}"


def quota_for(used: int, tier: Any) -> StorageQuota:
    limit = get_tier_limit(normalize_tier(tier), "storage")
    if limit == UNLIMITED:
        return StorageQuota(used=used, limit=UNLIMITED, remaining=UNLIMITED, percentage=0.0, can_upload=True)

    remaining = max(0, limit - used)
    percentage = min(used / limit * 100, 100.0) if limit > 0 else 100.0
    return StorageQuota(
        used=used,
        limit=limit,
        remaining=remaining,
        percentage=round(percentage, 2),
        can_upload=remaining > 0,
    )


async def get_storage_quota(db: AsyncSession, user_id: UUID) -> StorageQuota:
    profile = await db.get(Profile, user_id)
    if profile is None:
        return StorageQuota(used=0, limit=0, remaining=0, percentage=100.0, can_upload=False)
    return quota_for(int(profile.storage_used or 0), profile.subscription_tier)


async def can_upload_file(db: AsyncSession, user_id: UUID, file_size: int) -> UploadCheck:
    quota = await get_storage_quota(db, user_id)
    if quota.limit == UNLIMITED:
        return UploadCheck(can_upload=True, quota=quota)
    if quota.remaining < file_size:
        return UploadCheck(
            can_upload=False,
            quota=quota,
            reason=(
                f"File size ({format_bytes(file_size)}) exceeds remaining storage "
                f"({format_bytes(quota.remaining)})"
            ),
        )
    return UploadCheck(can_upload=True, quota=quota)


async def update_storage_usage(db: AsyncSession, user_id: UUID, bytes_change: int) -> bool:
    """Apply a usage delta, never dropping below zero. False when the user is unknown."""
    profile = await db.get(Profile, user_id)
    if profile is None:
        return False

    profile.storage_used = max(0, int(profile.storage_used or 0) + bytes_change)
    await db.commit()
    logger.info(
        "storage_usage_updated",
        user_id=str(user_id),
        delta=bytes_change,
        storage_used=profile.storage_used,
    )
    return True
