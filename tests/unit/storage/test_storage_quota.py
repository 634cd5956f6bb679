from uuid import uuid4

import pytest

from app.modules.storage.domain.quota import (
    can_upload_file,
    format_bytes,
    get_storage_quota,
    quota_for,
    update_storage_usage,
)

MB = 1024 * 1024
FREE_LIMIT = 50 * MB


@pytest.mark.parametrize(
    "num_bytes,expected",
    [
        (0, "0 Bytes"),
        (-1, "Unlimited"),
        (512, "512 Bytes"),
        (1536, "1.5 KB"),
        (50 * MB, "50 MB"),
        (5 * 1024 * MB, "5 GB"),
    ],
)
def test_format_bytes(num_bytes, expected):
    assert format_bytes(num_bytes) == expected


class TestQuotaFor:
    def test_partial_usage(self):
        quota = quota_for(10 * MB, "free")
        assert quota.limit == FREE_LIMIT
        assert quota.remaining == 40 * MB
        assert quota.percentage == 20.0
        assert quota.can_upload is True

    def test_over_limit_is_capped(self):
        quota = quota_for(60 * MB, "free")
        assert quota.remaining == 0
        assert quota.percentage == 100.0
        assert quota.can_upload is False

    def test_enterprise_is_unlimited(self):
        quota = quota_for(10 * 1024 * MB, "enterprise")
        assert quota.to_dict() == {
            "used": 10 * 1024 * MB,
            "limit": -1,
            "remaining": -1,
            "percentage": 0.0,
            "can_upload": True,
        }

    def test_unknown_tier_falls_back_to_free(self):
        assert quota_for(0, "platinum").limit == FREE_LIMIT


class TestStorageQuota:
    @pytest.mark.asyncio
    async def test_quota_from_profile(self, db, profile_factory):
        profile = await profile_factory("explorer", storage_used=100 * MB)
        quota = await get_storage_quota(db, profile.id)
        assert quota.limit == 500 * MB
        assert quota.percentage == 20.0

    @pytest.mark.asyncio
    async def test_unknown_user_cannot_upload(self, db):
        quota = await get_storage_quota(db, uuid4())
        assert quota.can_upload is False
        assert quota.limit == 0

    @pytest.mark.asyncio
    async def test_upload_within_remaining(self, db, profile_factory):
        profile = await profile_factory("free", storage_used=40 * MB)
        check = await can_upload_file(db, profile.id, 10 * MB)
        assert check.can_upload is True
        assert check.reason is None

    @pytest.mark.asyncio
    async def test_upload_over_remaining(self, db, profile_factory):
        profile = await profile_factory("free", storage_used=40 * MB)
        check = await can_upload_file(db, profile.id, 11 * MB)
        assert check.can_upload is False
        assert check.reason == "File size (11 MB) exceeds remaining storage (10 MB)"

    @pytest.mark.asyncio
    async def test_unlimited_tier_always_uploads(self, db, profile_factory):
        profile = await profile_factory("enterprise", storage_used=100 * 1024 * MB)
        check = await can_upload_file(db, profile.id, 50 * 1024 * MB)
        assert check.can_upload is True


class TestUpdateStorageUsage:
    @pytest.mark.asyncio
    async def test_applies_delta(self, db, profile_factory):
        profile = await profile_factory("free", storage_used=5 * MB)

        assert await update_storage_usage(db, profile.id, 3 * MB) is True
        await db.refresh(profile)
        assert profile.storage_used == 8 * MB

    @pytest.mark.asyncio
    async def test_never_negative(self, db, profile_factory):
        profile = await profile_factory("free", storage_used=MB)

        await update_storage_usage(db, profile.id, -5 * MB)
        await db.refresh(profile)
        assert profile.storage_used == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, db):
        assert await update_storage_usage(db, uuid4(), MB) is False
