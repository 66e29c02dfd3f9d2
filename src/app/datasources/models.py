"""Datasource persistence model -- one row per roadmap.

RoadmapDatasourceModel holds the connection config (JSON text), the
encrypted credential, the last good snapshot with its sync metadata, and the
uploaded CSV text for tabular roadmaps.

config_version increments on every config save; snapshot writes are
conditional on it so a slow sync cannot overwrite a newer config's cache.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class RoadmapDatasourceModel(Base):
    """Datasource row for a single roadmap, replaced wholesale on sync."""

    __tablename__ = "roadmap_datasources"

    roadmap_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    kind: Mapped[str] = mapped_column(
        String(32), nullable=False, default="tabular", server_default=text("'tabular'")
    )
    config_json: Mapped[str] = mapped_column(
        Text, nullable=False, default="{}", server_default=text("'{}'")
    )
    encrypted_credential: Mapped[str | None] = mapped_column(Text, nullable=True)
    config_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    # Snapshot
    snapshot_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    snapshot_captured_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    snapshot_truncated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    # Sync metadata
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_item_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Tabular roadmaps
    tabular_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
