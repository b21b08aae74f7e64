"""
Videos model - One canonical row per real-world title, merged across sources
"""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, JSON, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .base import Base, utcnow


class CanonicalVideo(Base):
    __tablename__ = "videos"

    # Opaque id derived from the match key
    id: Mapped[str] = mapped_column(
        String(40),
        primary_key=True,
        doc="Canonical identifier"
    )
    match_key: Mapped[str] = mapped_column(
        String(600),
        nullable=False,
        unique=True,
        doc="Normalized 'title|year' dedup key"
    )

    # Descriptive fields
    title: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    year: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    area: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    language: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    cast: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    director: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    writer: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    synopsis: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    remarks: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    cover: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    # Multi-source playback
    play_routes: Mapped[Dict[str, str]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="'<source>-<route label>' -> playback URL"
    )
    source_names: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Every contributing source, sorted"
    )
    source_priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        doc="Best contributing source weight"
    )

    # Quality and validity
    quality_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    is_valid: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
        index=True
    )
    last_validated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    # Optimistic concurrency counter; a stale UPDATE raises StaleDataError
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<CanonicalVideo(id='{self.id}', title='{self.title}', year='{self.year}', score={self.quality_score})>"
