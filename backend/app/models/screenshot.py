from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Text, Index, Uuid, func, text
from app.db import Base, JSONType
from app.services.time_windows import utcnow


class ScreenshotHash(Base):
    """
    Content-hash index over every submitted proof image.
    Exactly one row per digest has is_duplicate = false (the original); later
    submissions of the same bytes are stored flagged, pointing at it.
    """
    __tablename__ = "screenshot_hashes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    content_hash: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    match_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("matches.id", ondelete="CASCADE"), index=True, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text(), nullable=True)

    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_of_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("screenshot_hashes.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending|verified|flagged|rejected
    flag_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meta_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)  # phash, near-duplicate flags

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index(
            "uq_screenshot_hash_original",
            "content_hash",
            unique=True,
            postgresql_where=text("NOT is_duplicate"),
            sqlite_where=text("NOT is_duplicate"),
        ),
        Index("ix_screenshot_hashes_user_match", "user_id", "match_id"),
    )
