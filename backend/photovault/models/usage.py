import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger, Date, DateTime, Enum, ForeignKey, Integer, Numeric,
    UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from photovault.models.base import Base, generate_uuid, utc_now


class UsageAction(str, enum.Enum):
    upload = "upload"
    restore = "restore"
    download = "download"


class StorageUsageDaily(Base):
    """Aggregated storage footprint for one user on one calendar day.

    Re-recording the same (user, date) overwrites the row.
    """

    __tablename__ = "storage_usage_daily"
    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_usage_user_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False)
    calculated_cost: Mapped[Decimal] = mapped_column(
        Numeric(precision=14, scale=6), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )


class UsageLog(Base):
    """Append-only per-action usage record (upload, restore, download)."""

    __tablename__ = "usage_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action_type: Mapped[UsageAction] = mapped_column(
        Enum(UsageAction, native_enum=False), nullable=False
    )
    bytes_transferred: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cost: Mapped[Decimal] = mapped_column(
        Numeric(precision=14, scale=6), nullable=False, default=Decimal("0")
    )
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
