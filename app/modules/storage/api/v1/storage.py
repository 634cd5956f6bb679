from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.storage.domain.quota import (
    StorageQuota,
    can_upload_file,
    format_bytes,
    get_storage_quota,
)
from app.shared.core.auth import CurrentUser, requires_role
from app.shared.core.rate_limit import standard_limit
from app.shared.db.session import get_db

router = APIRouter(tags=["Storage"])


class StorageQuotaResponse(BaseModel):
    used: int
    limit: int
    remaining: int
    percentage: float
    can_upload: bool
    used_display: str
    limit_display: str


class UploadCheckRequest(BaseModel):
    file_size: int = Field(ge=0)


class UploadCheckResponse(BaseModel):
    can_upload: bool
    reason: Optional[str] = None
    quota: StorageQuotaResponse


def _quota_response(quota: StorageQuota) -> StorageQuotaResponse:
    return StorageQuotaResponse(
        **quota.to_dict(),
        used_display=format_bytes(quota.used),
        limit_display=format_bytes(quota.limit),
    )


@router.get("/quota", response_model=StorageQuotaResponse)
@standard_limit
async def get_quota(
    request: Request,
    user: Annotated[CurrentUser, Depends(requires_role("user"))],
    db: AsyncSession = Depends(get_db),
) -> StorageQuotaResponse:
    return _quota_response(await get_storage_quota(db, user.id))


@router.post("/check-upload", response_model=UploadCheckResponse)
@standard_limit
async def check_upload(
    request: Request,
    check_req: UploadCheckRequest,
    user: Annotated[CurrentUser, Depends(requires_role("user"))],
    db: AsyncSession = Depends(get_db),
) -> UploadCheckResponse:
    result = await can_upload_file(db, user.id, check_req.file_size)
    return UploadCheckResponse(
        can_upload=result.can_upload,
        reason=result.reason,
        quota=_quota_response(result.quota),
    )
