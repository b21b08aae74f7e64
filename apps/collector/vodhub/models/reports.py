"""
Invalid URL reports - User and validator reports of dead playback links
"""
from datetime import datetime
from uuid import UUID
import uuid

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .base import Base, utcnow


class InvalidUrlReport(Base):
    __tablename__ = "invalid_url_reports"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    video_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    video_title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    play_url: Mapped[str] = mapped_column(Text, nullable=False)
    error_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="unreachable",
        doc="e.g. 'unreachable', 'timeout', 'http_404', 'user_report'"
    )
    reported_by: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="user",
        doc="'user' or 'system'"
    )
    is_fixed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True
    )

    def __repr__(self) -> str:
        return f"<InvalidUrlReport(video_id='{self.video_id}', error_type='{self.error_type}', by='{self.reported_by}')>"
