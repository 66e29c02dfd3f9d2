"""Pydantic schemas for roadmap datasources -- config, canonical items, snapshots.

Defines all structured types for the sync engine:
- Enums: DatasourceKind, QueryMode, QueryKind, QueryTemplate, MissingDateStrategy, TShirtSize
- Connection config: DatasourceConfig (always produced by normalizer.normalize_config)
- Canonical output: RoadmapItem
- Persistence: Snapshot, DatasourceRecord
- Results: FetchOutcome, ItemsResult, ValidationReport, DatasourceSummary
- Auxiliary lookups: WorkItemLookup, WorkItemComment, RelatedWorkItem, DebugPayload
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class DatasourceKind(str, Enum):
    """Where a roadmap's items come from."""

    TABULAR = "tabular"
    EXTERNAL_TRACKER = "external_tracker"


class QueryMode(str, Enum):
    SIMPLE = "simple"
    ADVANCED = "advanced"


class QueryKind(str, Enum):
    """Advanced-mode query source: inline WIQL text or a saved query id."""

    INLINE = "inline"
    SAVED = "saved"


class QueryTemplate(str, Enum):
    """Curated presets for simple mode."""

    EPICS_FEATURES_ACTIVE = "epics_features_active"
    STORIES_ACTIVE = "stories_active"
    RECENTLY_CHANGED = "recently_changed"


class MissingDateStrategy(str, Enum):
    """What the mapper does with records whose start/end dates are empty.

    - FALLBACK: start <- created date, end <- target date or start
    - SKIP: drop the record from the snapshot
    - UNPLANNED: keep the record with empty dates
    """

    FALLBACK = "fallback"
    SKIP = "skip"
    UNPLANNED = "unplanned"


class TShirtSize(str, Enum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"


# ── Connection Config ───────────────────────────────────────────────────────


class DatasourceConfig(BaseModel):
    """Normalized datasource configuration for one roadmap.

    Never build this from user input directly -- go through
    normalizer.normalize_config(), which clamps and defaults every field.
    """

    model_config = ConfigDict(frozen=True)

    kind: DatasourceKind = DatasourceKind.TABULAR
    endpoint_url: str = ""
    project: str = ""
    team: str | None = None
    query_mode: QueryMode = QueryMode.SIMPLE
    query_kind: QueryKind = QueryKind.INLINE
    query_text: str = ""
    query_template: QueryTemplate = QueryTemplate.EPICS_FEATURES_ACTIVE
    area_path: str = ""
    record_types: list[str] = Field(default_factory=list)
    include_closed: bool = False
    stakeholder_tag_prefix: str = "Stakeholder:"
    region_tag_prefix: str = "Region:"
    field_map: dict[str, str] = Field(default_factory=dict)
    refresh_minutes: int = 15
    max_items: int = 500
    missing_date_strategy: MissingDateStrategy = MissingDateStrategy.FALLBACK


# ── Canonical Roadmap Item ──────────────────────────────────────────────────


class RoadmapItem(BaseModel):
    """Canonical roadmap item produced by the field mapper or the CSV parser.

    Equality treats `stakeholders` and `regions` as sets; their stored order is
    the first-seen order used for display.
    """

    id: str
    title: str
    url: str = ""
    stakeholders: list[str] = Field(default_factory=list)
    submitter_name: str = ""
    submitter_department: str = ""
    submitter_priority: int | None = None
    short_description: str = ""
    long_description: str = ""
    criticality: str = ""
    disposition: str = ""
    executive_sponsor: str = ""
    start_date: str = ""
    end_date: str = ""
    requested_delivery_date: str = ""
    t_shirt_size: TShirtSize | None = None
    pillar: str = ""
    regions: list[str] = Field(default_factory=list)
    expense_type: str = ""
    point_of_contact: str = ""
    lead: str = ""

    def _comparable(self) -> dict[str, Any]:
        data = self.model_dump()
        data["stakeholders"] = frozenset(self.stakeholders)
        data["regions"] = frozenset(self.regions)
        return data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RoadmapItem):
            return NotImplemented
        return self._comparable() == other._comparable()

    __hash__ = None  # type: ignore[assignment]


# ── Persistence ─────────────────────────────────────────────────────────────


class Snapshot(BaseModel):
    """Last successfully synced, fully mapped item list."""

    model_config = ConfigDict(frozen=True)

    items: list[RoadmapItem] = Field(default_factory=list)
    captured_at: datetime
    truncated: bool = False


class DatasourceRecord(BaseModel):
    """One roadmap's persisted datasource row.

    Rows are replaced wholesale; `config_version` increments on every config
    save so a sync started under an older config can be detected.
    """

    model_config = ConfigDict(frozen=True)

    roadmap_id: str
    kind: DatasourceKind = DatasourceKind.TABULAR
    config_json: str = "{}"
    encrypted_credential: str | None = None
    config_version: int = 0
    snapshot_json: str | None = None
    snapshot_captured_at: datetime | None = None
    snapshot_truncated: bool = False
    last_sync_at: datetime | None = None
    last_sync_duration_ms: int | None = None
    last_sync_item_count: int | None = None
    last_sync_error: str | None = None
    tabular_text: str | None = None

    @property
    def has_secret(self) -> bool:
        return bool(self.encrypted_credential)

    @property
    def has_snapshot(self) -> bool:
        return self.snapshot_captured_at is not None


# ── Results ─────────────────────────────────────────────────────────────────


class FetchOutcome(BaseModel):
    """Raw tracker records in original id order, plus the truncation flag."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    truncated: bool = False


class ItemsResult(BaseModel):
    """What get_items() hands to the surrounding application."""

    items: list[RoadmapItem] = Field(default_factory=list)
    stale: bool = False
    truncated: bool = False
    warning: str | None = None


class ValidationReport(BaseModel):
    """Dry-run validation outcome. Warnings are informational, never raised."""

    warnings: list[str] = Field(default_factory=list)
    unknown_fields: list[str] = Field(default_factory=list)
    empty_fields: list[str] = Field(default_factory=list)
    sample_size: int = 0


class DatasourceSummary(BaseModel):
    """Public view of a datasource row -- never exposes the credential."""

    kind: DatasourceKind
    config: DatasourceConfig | None = None
    has_secret: bool = False
    last_sync_at: datetime | None = None
    last_sync_duration_ms: int | None = None
    last_sync_item_count: int | None = None
    last_sync_error: str | None = None
    last_snapshot_at: datetime | None = None


# ── Auxiliary Lookups ───────────────────────────────────────────────────────


class WorkItemLookup(BaseModel):
    """A tracker UI URL resolved for pre-filling configuration."""

    endpoint_url: str
    project: str
    id: str
    work_item_type: str | None = None
    area_path: str | None = None


class WorkItemComment(BaseModel):
    id: int
    text: str = ""
    author: str = ""
    created_date: str | None = None
    revised_date: str | None = None


class RelatedWorkItem(BaseModel):
    id: int
    title: str
    state: str = "Unknown"
    created_date: str | None = None
    changed_date: str | None = None
    resolved_date: str | None = None
    closed_date: str | None = None
    target_date: str | None = None
    url: str = ""


class DebugPayload(BaseModel):
    """Raw view of what a sync would send and receive, for troubleshooting."""

    config: DatasourceConfig
    query: str
    fields: list[str]
    sample_ids: list[int]
    total_work_items: int
    query_response: dict[str, Any] = Field(default_factory=dict)
    batch_response: dict[str, Any] | None = None
