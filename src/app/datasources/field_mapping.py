"""Field mappings from raw tracker records to canonical RoadmapItems.

Defines:
- DEFAULT_FIELD_MAP: Built-in external field for each canonical field a
  stock tracker process template carries.
- build_field_map(): Defaults overlaid with the config's field_map.
- collect_fields(): The exact field list requested from workitemsbatch.
- map_work_item(): One raw record -> RoadmapItem, or None when the
  missing-date strategy vetoes it.

Raw values are untyped at this boundary and only ever read through
extract_display_value(). Nothing here raises on malformed input.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from src.app.datasources.schemas import DatasourceConfig, MissingDateStrategy, RoadmapItem
from src.app.datasources.text import (
    decode_tags,
    extract_display_value,
    normalize_regions,
    normalize_stakeholders,
    normalize_t_shirt_size,
    split_list,
    title_case,
    to_iso_date,
    to_priority,
)

# ── Tracker Field Names ────────────────────────────────────────────────────

ID_FIELD = "System.Id"
TITLE_FIELD = "System.Title"
CREATED_DATE_FIELD = "System.CreatedDate"
TARGET_DATE_FIELD = "Microsoft.VSTS.Scheduling.TargetDate"
START_DATE_FIELD = "Microsoft.VSTS.Scheduling.StartDate"
FINISH_DATE_FIELD = "Microsoft.VSTS.Scheduling.FinishDate"
TAGS_FIELD = "System.Tags"

DEFAULT_FIELD_MAP: dict[str, str] = {
    "title": TITLE_FIELD,
    "start_date": START_DATE_FIELD,
    "end_date": FINISH_DATE_FIELD,
    "pillar": "Custom.Pillar",
    "regions": "Custom.Region",
    "criticality": "Custom.Criticality",
    "t_shirt_size": "Custom.TShirtSize",
}

# Always requested so date fallbacks and titles work without any mapping
BASE_FIELDS: tuple[str, ...] = (
    ID_FIELD,
    TITLE_FIELD,
    CREATED_DATE_FIELD,
    TARGET_DATE_FIELD,
    START_DATE_FIELD,
    FINISH_DATE_FIELD,
)

# Canonical text fields copied through extract_display_value() unchanged
_PLAIN_TEXT_FIELDS: tuple[str, ...] = (
    "submitter_name",
    "submitter_department",
    "short_description",
    "long_description",
    "criticality",
    "disposition",
    "executive_sponsor",
    "expense_type",
    "point_of_contact",
    "lead",
)


def build_field_map(config: DatasourceConfig) -> dict[str, str]:
    """Defaults overlaid with the configured overrides."""
    return {**DEFAULT_FIELD_MAP, **config.field_map}


def collect_fields(config: DatasourceConfig) -> list[str]:
    """Base fields plus every mapped external field, first-seen order, no dupes."""
    fields: list[str] = list(BASE_FIELDS)
    for external in build_field_map(config).values():
        if external and external not in fields:
            fields.append(external)
    return fields


def build_work_item_url(base_url: str, project: str, item_id: Any) -> str:
    return f"{base_url.rstrip('/')}/{quote(project, safe='')}/_workitems/edit/{item_id}"


def _read(fields: dict[str, Any], external: str | None) -> Any:
    if not external:
        return None
    return fields.get(external)


def _tag_or_list(fields: dict[str, Any], external: str | None, prefix: str) -> list[str]:
    """Tag fields are decoded by prefix; any other field is a delimited list."""
    raw = _read(fields, external)
    if external == TAGS_FIELD:
        return decode_tags(raw, prefix)
    return split_list(raw)


def _resolve_dates(
    fields: dict[str, Any],
    field_map: dict[str, str],
    strategy: MissingDateStrategy,
) -> tuple[str, str] | None:
    start = to_iso_date(_read(fields, field_map.get("start_date"))) or to_iso_date(
        fields.get(START_DATE_FIELD)
    )
    end = to_iso_date(_read(fields, field_map.get("end_date"))) or to_iso_date(
        fields.get(FINISH_DATE_FIELD)
    )

    if strategy == MissingDateStrategy.FALLBACK:
        start = start or to_iso_date(fields.get(CREATED_DATE_FIELD))
        end = end or to_iso_date(fields.get(TARGET_DATE_FIELD)) or start
    elif strategy == MissingDateStrategy.SKIP and (not start or not end):
        return None

    # A single known date still gives a one-day bar
    if not end:
        end = start
    return start, end


def map_work_item(
    record: dict[str, Any],
    config: DatasourceConfig,
    base_url: str,
) -> RoadmapItem | None:
    """Map one raw `{id, fields}` record to a RoadmapItem.

    Args:
        record: Raw workitemsbatch entry.
        config: Normalized datasource config (field map, prefixes, strategy).
        base_url: Normalized organization URL, used for the fallback item url.

    Returns:
        The canonical item, or None when `skip` drops an undated record.
        Closed items are never filtered here; that is the query's job.
    """
    item_id = record.get("id")
    fields = record.get("fields")
    if not isinstance(fields, dict):
        fields = {}
    if item_id is None:
        item_id = fields.get(ID_FIELD)
    item_id = extract_display_value(item_id)

    field_map = build_field_map(config)

    dates = _resolve_dates(fields, field_map, config.missing_date_strategy)
    if dates is None:
        return None
    start_date, end_date = dates

    title = extract_display_value(_read(fields, field_map.get("title")))
    url = extract_display_value(_read(fields, field_map.get("url")))

    plain = {name: extract_display_value(_read(fields, field_map.get(name))) for name in _PLAIN_TEXT_FIELDS}

    return RoadmapItem(
        id=item_id,
        title=title or f"Work Item {item_id}",
        url=url or build_work_item_url(base_url, config.project, item_id),
        stakeholders=normalize_stakeholders(
            _tag_or_list(fields, field_map.get("stakeholders"), config.stakeholder_tag_prefix)
        ),
        submitter_priority=to_priority(_read(fields, field_map.get("submitter_priority"))),
        start_date=start_date,
        end_date=end_date,
        requested_delivery_date=to_iso_date(_read(fields, field_map.get("requested_delivery_date"))),
        t_shirt_size=normalize_t_shirt_size(
            extract_display_value(_read(fields, field_map.get("t_shirt_size")))
        ),
        pillar=title_case(extract_display_value(_read(fields, field_map.get("pillar")))),
        regions=normalize_regions(
            _tag_or_list(fields, field_map.get("regions"), config.region_tag_prefix)
        ),
        **plain,
    )


def map_work_items(
    records: list[dict[str, Any]],
    config: DatasourceConfig,
    base_url: str,
) -> list[RoadmapItem]:
    """Map records in order, dropping the ones the date strategy vetoes."""
    items: list[RoadmapItem] = []
    for record in records:
        item = map_work_item(record, config, base_url)
        if item is not None:
            items.append(item)
    return items
