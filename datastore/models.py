"""SQLAlchemy 2.0 ORM models for the records the pipeline reads and writes."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from common.contracts import Project, ScreenshotRecord, ScreenshotStatus
from rabbit.models import Viewport


class Base(DeclarativeBase):
    pass


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # parsed project configuration; recipients live under config["integrations"]
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    def to_domain(self) -> Project:
        return Project(id=self.id, name=self.name, config=dict(self.config or {}))


class ScreenshotRow(Base):
    __tablename__ = "screenshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    selector: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    viewport_width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    viewport_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # pending, processing, completed, failed
    status: Mapped[str] = mapped_column(
        String(20), default=ScreenshotStatus.PENDING.value, nullable=False
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diff_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diff_percentage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # bumped on every image swap; guards the compare-and-set
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def to_domain(self) -> ScreenshotRecord:
        viewport = None
        if self.viewport_width and self.viewport_height:
            viewport = Viewport(width=self.viewport_width, height=self.viewport_height)

        return ScreenshotRecord(
            id=self.id,
            project_id=self.project_id,
            url=self.url,
            status=ScreenshotStatus(self.status),
            name=self.name,
            selector=self.selector,
            viewport=viewport,
            image_url=self.image_url,
            last_image_url=self.last_image_url,
            diff_image_url=self.diff_image_url,
            diff_percentage=self.diff_percentage,
            error=self.error,
            version=self.version,
            updated_at=self.updated_at,
        )
