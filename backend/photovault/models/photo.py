"""Photo models: archived objects and their tags.

A Photo row stores metadata for one object held in cold storage.
The bytes live in the archive storage backend under ``storage_key``.
``restored_until`` is only populated while the status is ``restored``.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from photovault.models.base import Base, TimestampMixin, generate_uuid, utc_now


class ArchivalStatus(str, enum.Enum):
    archived = "archived"
    restore_requested = "restore_requested"
    restoring = "restoring"
    restored = "restored"
    failed = "failed"


class Photo(TimestampMixin, Base):
    __tablename__ = "photos"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    relative_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ArchivalStatus] = mapped_column(
        Enum(ArchivalStatus, native_enum=False),
        nullable=False,
        default=ArchivalStatus.archived,
    )
    restored_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    tag_rows: Mapped[list["PhotoTag"]] = relationship(
        back_populates="photo",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def tags(self) -> list[str]:
        return [row.tag for row in self.tag_rows]


class PhotoTag(Base):
    """One tag on a photo. Duplicates are allowed; order carries no meaning."""

    __tablename__ = "photo_tags"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid)
    photo_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("photos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tag: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    photo: Mapped[Photo] = relationship(back_populates="tag_rows")
