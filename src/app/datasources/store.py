"""DatasourceStore abstract base class -- the persistence interface the sync engine uses.

The engine never touches SQL directly. SqlDatasourceStore (repository.py) is
the production implementation; tests use an in-memory double.

Snapshot items are persisted as a JSON array of RoadmapItem dicts; the
helpers at the bottom of this module own that encoding.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime

import structlog
from pydantic import TypeAdapter, ValidationError

from src.app.datasources.schemas import (
    DatasourceKind,
    DatasourceRecord,
    RoadmapItem,
    Snapshot,
)

logger = structlog.get_logger(__name__)

_ITEMS_ADAPTER = TypeAdapter(list[RoadmapItem])


class DatasourceStore(ABC):
    """Abstract interface for per-roadmap datasource rows.

    Methods:
        get: Fetch a roadmap's row, or None.
        ensure: Fetch a roadmap's row, creating a tabular default if absent.
        save_config: Replace kind/config/credential, bump config_version.
        write_snapshot: Replace snapshot + success metadata if the config
            version still matches.
        record_sync_failure: Record a failed sync without touching the snapshot.
        set_tabular_text: Store uploaded CSV text.
    """

    @abstractmethod
    async def get(self, roadmap_id: str) -> DatasourceRecord | None:
        """Fetch a roadmap's datasource row."""
        ...

    @abstractmethod
    async def ensure(self, roadmap_id: str) -> DatasourceRecord:
        """Fetch the row, inserting a tabular default first if none exists."""
        ...

    @abstractmethod
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
        """Persist a new configuration and increment config_version.

        Args:
            roadmap_id: Roadmap identifier.
            kind: Datasource kind.
            config_json: Normalized config as JSON text.
            encrypted_credential: New ciphertext, or None to clear.
            keep_credential: Leave the stored credential untouched
                (encrypted_credential is then ignored).
            clear_snapshot: Drop the cached snapshot and its truncation flag.
        """
        ...

    @abstractmethod
    async def write_snapshot(
        self,
        roadmap_id: str,
        *,
        expected_version: int,
        snapshot: Snapshot,
        duration_ms: int,
    ) -> bool:
        """Replace the snapshot and success metadata in one write.

        Sets last_sync_at to snapshot.captured_at and clears last_sync_error.

        Returns:
            False (and writes nothing) when config_version no longer equals
            expected_version.
        """
        ...

    @abstractmethod
    async def record_sync_failure(self, roadmap_id: str, *, at: datetime, error: str) -> None:
        """Set last_sync_at/last_sync_error; the snapshot stays untouched."""
        ...

    @abstractmethod
    async def set_tabular_text(self, roadmap_id: str, text: str | None) -> DatasourceRecord:
        """Store CSV text for a tabular roadmap."""
        ...


# ── Snapshot Encoding ───────────────────────────────────────────────────────


def dump_items(items: list[RoadmapItem]) -> str:
    return json.dumps([item.model_dump(mode="json") for item in items])


def load_snapshot(record: DatasourceRecord | None) -> Snapshot | None:
    """Decode the stored snapshot, or None when the row has none.

    A snapshot whose JSON cannot be decoded is treated as empty rather than
    absent: it was written by a successful sync.
    """
    if record is None or record.snapshot_captured_at is None:
        return None
    items: list[RoadmapItem] = []
    if record.snapshot_json:
        try:
            items = _ITEMS_ADAPTER.validate_json(record.snapshot_json)
        except ValidationError:
            logger.warning("datasource.snapshot_unreadable", roadmap_id=record.roadmap_id)
    return Snapshot(
        items=items,
        captured_at=record.snapshot_captured_at,
        truncated=record.snapshot_truncated,
    )
