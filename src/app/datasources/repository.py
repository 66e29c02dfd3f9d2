"""SQL-backed DatasourceStore -- async persistence for roadmap_datasources.

Provides SqlDatasourceStore with the session_factory callable pattern used by
the other repositories. Rows are converted to immutable DatasourceRecord
schemas on the way out; snapshot replacement is a single conditional UPDATE
keyed on config_version.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.datasources.models import RoadmapDatasourceModel
from src.app.datasources.schemas import DatasourceKind, DatasourceRecord, Snapshot
from src.app.datasources.store import DatasourceStore, dump_items

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _model_to_record(model: RoadmapDatasourceModel) -> DatasourceRecord:
    """Convert RoadmapDatasourceModel to DatasourceRecord schema."""
    try:
        kind = DatasourceKind(model.kind)
    except ValueError:
        kind = DatasourceKind.TABULAR
    return DatasourceRecord(
        roadmap_id=model.roadmap_id,
        kind=kind,
        config_json=model.config_json or "{}",
        encrypted_credential=model.encrypted_credential,
        config_version=model.config_version or 0,
        snapshot_json=model.snapshot_json,
        snapshot_captured_at=_aware(model.snapshot_captured_at),
        snapshot_truncated=bool(model.snapshot_truncated),
        last_sync_at=_aware(model.last_sync_at),
        last_sync_duration_ms=model.last_sync_duration_ms,
        last_sync_item_count=model.last_sync_item_count,
        last_sync_error=model.last_sync_error,
        tabular_text=model.tabular_text,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class SqlDatasourceStore(DatasourceStore):
    """DatasourceStore backed by the roadmap_datasources table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, roadmap_id: str) -> RoadmapDatasourceModel | None:
        stmt = select(RoadmapDatasourceModel).where(
            RoadmapDatasourceModel.roadmap_id == roadmap_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_or_create(
        self, session: AsyncSession, roadmap_id: str
    ) -> RoadmapDatasourceModel:
        model = await self._load(session, roadmap_id)
        if model is not None:
            return model
        session.add(RoadmapDatasourceModel(roadmap_id=roadmap_id, kind=DatasourceKind.TABULAR.value))
        try:
            await session.flush()
        except IntegrityError:
            # Lost an insert race; the other writer's row is as good as ours
            await session.rollback()
        # Reload so server defaults are populated
        result = await session.execute(
            select(RoadmapDatasourceModel).where(RoadmapDatasourceModel.roadmap_id == roadmap_id)
        )
        return result.scalar_one()

    async def get(self, roadmap_id: str) -> DatasourceRecord | None:
        async for session in self._session_factory():
            model = await self._load(session, roadmap_id)
            return _model_to_record(model) if model is not None else None

    async def ensure(self, roadmap_id: str) -> DatasourceRecord:
        async for session in self._session_factory():
            model = await self._load_or_create(session, roadmap_id)
            await session.commit()
            return _model_to_record(model)

    async def save_config(
        self,
        roadmap_id: str,
        *,
        kind: DatasourceKind,
        config_json: str,
        encrypted_credential: str | None,
        keep_credential: bool,
        clear_snapshot: bool,
    ) -> DatasourceRecord:
        async for session in self._session_factory():
            model = await self._load_or_create(session, roadmap_id)
            model.kind = kind.value
            model.config_json = config_json
            if not keep_credential:
                model.encrypted_credential = encrypted_credential
            model.config_version = (model.config_version or 0) + 1
            model.last_sync_error = None
            if clear_snapshot:
                model.snapshot_json = None
                model.snapshot_captured_at = None
                model.snapshot_truncated = False
            await session.commit()
            await session.refresh(model)
            logger.info(
                "datasource.config_saved",
                roadmap_id=roadmap_id,
                kind=kind.value,
                config_version=model.config_version,
                snapshot_cleared=clear_snapshot,
            )
            return _model_to_record(model)

    async def write_snapshot(
        self,
        roadmap_id: str,
        *,
        expected_version: int,
        snapshot: Snapshot,
        duration_ms: int,
    ) -> bool:
        async for session in self._session_factory():
            stmt = (
                update(RoadmapDatasourceModel)
                .where(
                    RoadmapDatasourceModel.roadmap_id == roadmap_id,
                    RoadmapDatasourceModel.config_version == expected_version,
                )
                .values(
                    snapshot_json=dump_items(snapshot.items),
                    snapshot_captured_at=snapshot.captured_at,
                    snapshot_truncated=snapshot.truncated,
                    last_sync_at=snapshot.captured_at,
                    last_sync_duration_ms=duration_ms,
                    last_sync_item_count=len(snapshot.items),
                    last_sync_error=None,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1
        return False

    async def record_sync_failure(self, roadmap_id: str, *, at: datetime, error: str) -> None:
        async for session in self._session_factory():
            stmt = (
                update(RoadmapDatasourceModel)
                .where(RoadmapDatasourceModel.roadmap_id == roadmap_id)
                .values(last_sync_at=at, last_sync_error=error)
            )
            await session.execute(stmt)
            await session.commit()

    async def set_tabular_text(self, roadmap_id: str, text: str | None) -> DatasourceRecord:
        async for session in self._session_factory():
            model = await self._load_or_create(session, roadmap_id)
            model.tabular_text = text
            await session.commit()
            await session.refresh(model)
            return _model_to_record(model)
