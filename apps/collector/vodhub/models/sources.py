"""
Sources model - Resource sites exposing CMS / TVBox list+detail APIs
"""
from datetime import datetime
from typing import List, Optional
from uuid import UUID
import uuid

from pydantic import BaseModel, Field
from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, JSON, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .base import Base, utcnow


class SourceConfig(BaseModel):
    """Detached, read-only view of a source used during a collection run"""
    name: str
    url: str
    weight: int = 50
    source_type: str = "cms"
    response_format: str = "auto"
    timeout: Optional[float] = None
    categories: List[int] = Field(default_factory=list)

    def serves_category(self, category_id: Optional[int]) -> bool:
        if category_id is None or not self.categories:
            return True
        return category_id in self.categories


class Source(Base):
    __tablename__ = "sources"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique identifier for the source"
    )

    # Core source information
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        doc="Short source name, used as the route key prefix"
    )
    url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="API base URL, e.g. https://example.com/api.php/provide/vod/"
    )
    source_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="cms",
        server_default=text("'cms'"),
        doc="API dialect: 'cms' or 'tvbox'"
    )
    response_format: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="auto",
        server_default=text("'auto'"),
        doc="CMS payload format: 'auto', 'json' or 'xml'"
    )

    # Trust and limits
    weight: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=50,
        server_default=text("50"),
        doc="Trust weight; higher weight wins field conflicts during merge"
    )
    timeout: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        doc="Per-request timeout override in seconds"
    )
    categories: Mapped[List[int]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Category ids this source serves (empty = all)"
    )

    enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        doc="Whether this source is collected"
    )

    # Metadata
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
        onupdate=utcnow,
    )

    def snapshot(self) -> SourceConfig:
        return SourceConfig(
            name=self.name,
            url=self.url,
            weight=self.weight,
            source_type=self.source_type,
            response_format=self.response_format,
            timeout=self.timeout,
            categories=list(self.categories or []),
        )

    def __repr__(self) -> str:
        return f"<Source(id={self.id}, name='{self.name}', type='{self.source_type}', weight={self.weight}, enabled={self.enabled})>"
