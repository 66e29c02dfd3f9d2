"""Tests for SqlDatasourceStore against a throwaway SQLite database.

Exercises the real SQLAlchemy model and queries through aiosqlite, using the
same session_factory pattern the application wires in main.py.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.app.core.database import Base
from src.app.datasources import models  # noqa: F401
from src.app.datasources.repository import SqlDatasourceStore
from src.app.datasources.schemas import DatasourceKind, RoadmapItem, Snapshot
from src.app.datasources.store import DatasourceStore, load_snapshot

CAPTURED_AT = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'datasources.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def session_factory():
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield SqlDatasourceStore(session_factory=session_factory)
    await engine.dispose()


async def _configure(store: SqlDatasourceStore, roadmap_id: str = "roadmap-1", **overrides):
    options = {
        "kind": DatasourceKind.EXTERNAL_TRACKER,
        "config_json": '{"project": "Roadmap"}',
        "encrypted_credential": "ciphertext",
        "keep_credential": False,
        "clear_snapshot": True,
    }
    options.update(overrides)
    return await store.save_config(roadmap_id, **options)


def _snapshot(*titles: str, truncated: bool = False) -> Snapshot:
    items = [RoadmapItem(id=str(i), title=title, regions=["US"]) for i, title in enumerate(titles, 1)]
    return Snapshot(items=items, captured_at=CAPTURED_AT, truncated=truncated)


# ── Interface ────────────────────────────────────────────────────────────────


class TestDatasourceStoreABC:
    def test_abstract_methods(self):
        assert DatasourceStore.__abstractmethods__ == {
            "get",
            "ensure",
            "save_config",
            "write_snapshot",
            "record_sync_failure",
            "set_tabular_text",
        }

    def test_cannot_be_instantiated(self):
        with pytest.raises(TypeError, match="abstract"):
            DatasourceStore()  # type: ignore[abstract]


# ── Rows & Config ────────────────────────────────────────────────────────────


class TestSqlDatasourceStore:
    async def test_get_missing_row(self, sql_store):
        assert await sql_store.get("nobody") is None

    async def test_ensure_creates_tabular_default_once(self, sql_store):
        first = await sql_store.ensure("roadmap-1")
        second = await sql_store.ensure("roadmap-1")
        assert first.kind == DatasourceKind.TABULAR
        assert first.config_json == "{}"
        assert first.config_version == 0
        assert second == first

    async def test_save_config_bumps_version(self, sql_store):
        first = await _configure(sql_store)
        second = await _configure(sql_store)
        assert first.kind == DatasourceKind.EXTERNAL_TRACKER
        assert first.config_version == 1
        assert second.config_version == 2
        assert second.encrypted_credential == "ciphertext"

    async def test_keep_credential(self, sql_store):
        await _configure(sql_store)
        record = await _configure(sql_store, encrypted_credential=None, keep_credential=True)
        assert record.encrypted_credential == "ciphertext"

    async def test_clear_credential(self, sql_store):
        await _configure(sql_store)
        record = await _configure(sql_store, encrypted_credential=None)
        assert record.encrypted_credential is None
        assert record.has_secret is False

    async def test_tabular_text(self, sql_store):
        record = await sql_store.set_tabular_text("roadmap-csv", "id,title\n1,A\n")
        assert record.tabular_text == "id,title\n1,A\n"
        assert (await sql_store.get("roadmap-csv")).kind == DatasourceKind.TABULAR


# ── Snapshots ────────────────────────────────────────────────────────────────


class TestSnapshots:
    async def test_write_snapshot_round_trip(self, sql_store):
        record = await _configure(sql_store)

        written = await sql_store.write_snapshot(
            "roadmap-1",
            expected_version=record.config_version,
            snapshot=_snapshot("Billing", "Search", truncated=True),
            duration_ms=120,
        )

        assert written is True
        stored = await sql_store.get("roadmap-1")
        assert stored.snapshot_captured_at == CAPTURED_AT
        assert stored.snapshot_truncated is True
        assert stored.last_sync_at == CAPTURED_AT
        assert stored.last_sync_duration_ms == 120
        assert stored.last_sync_item_count == 2
        snapshot = load_snapshot(stored)
        assert [item.title for item in snapshot.items] == ["Billing", "Search"]
        assert snapshot.items[0].regions == ["US"]

    async def test_version_mismatch_writes_nothing(self, sql_store):
        record = await _configure(sql_store)
        await _configure(sql_store, clear_snapshot=False)

        written = await sql_store.write_snapshot(
            "roadmap-1",
            expected_version=record.config_version,
            snapshot=_snapshot("Stale"),
            duration_ms=5,
        )

        assert written is False
        stored = await sql_store.get("roadmap-1")
        assert stored.has_snapshot is False
        assert stored.last_sync_at is None

    async def test_failure_keeps_snapshot(self, sql_store):
        record = await _configure(sql_store)
        await sql_store.write_snapshot(
            "roadmap-1", expected_version=record.config_version, snapshot=_snapshot("Kept"), duration_ms=5
        )
        failed_at = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

        await sql_store.record_sync_failure("roadmap-1", at=failed_at, error="Work tracker query failed (503)")

        stored = await sql_store.get("roadmap-1")
        assert stored.last_sync_at == failed_at
        assert stored.last_sync_error == "Work tracker query failed (503)"
        assert stored.snapshot_captured_at == CAPTURED_AT
        assert [item.title for item in load_snapshot(stored).items] == ["Kept"]

    async def test_successful_write_clears_error(self, sql_store):
        record = await _configure(sql_store)
        await sql_store.record_sync_failure("roadmap-1", at=CAPTURED_AT, error="boom")
        await sql_store.write_snapshot(
            "roadmap-1", expected_version=record.config_version, snapshot=_snapshot(), duration_ms=5
        )
        stored = await sql_store.get("roadmap-1")
        assert stored.last_sync_error is None
        assert stored.has_snapshot is True
        assert load_snapshot(stored).items == []

    async def test_config_save_can_clear_snapshot(self, sql_store):
        record = await _configure(sql_store)
        await sql_store.write_snapshot(
            "roadmap-1",
            expected_version=record.config_version,
            snapshot=_snapshot("Old", truncated=True),
            duration_ms=5,
        )

        kept = await _configure(sql_store, clear_snapshot=False)
        assert kept.has_snapshot is True

        cleared = await _configure(sql_store, clear_snapshot=True)
        assert cleared.has_snapshot is False
        assert cleared.snapshot_json is None
        assert cleared.snapshot_truncated is False

    async def test_unreadable_snapshot_is_empty_not_absent(self, sql_store):
        record = await _configure(sql_store)
        await sql_store.write_snapshot(
            "roadmap-1", expected_version=record.config_version, snapshot=_snapshot("A"), duration_ms=5
        )
        stored = await sql_store.get("roadmap-1")
        corrupted = stored.model_copy(update={"snapshot_json": "{not json"})

        snapshot = load_snapshot(corrupted)

        assert snapshot is not None
        assert snapshot.items == []
        assert snapshot.captured_at == CAPTURED_AT
