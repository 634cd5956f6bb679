from datetime import date as date_type, datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class UsageTracking(Base):
    """Daily per-feature usage counters (one row per user, feature and day)."""

    __tablename__ = "usage_tracking"
    __table_args__ = (
        UniqueConstraint("user_id", "feature", "date", name="uq_usage_tracking_user_feature_date"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("profiles.id", ondelete="CASCADE"), index=True
    )
    feature: Mapped[str] = mapped_column(String(50))
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    date: Mapped[date_type] = mapped_column(Date, default=lambda: datetime.now(timezone.utc).date())

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
