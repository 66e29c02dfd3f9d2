"""Config normalization for roadmap datasources.

Turns whatever was stored or submitted (a dict, a JSON string, None, garbage)
into a fully defaulted DatasourceConfig. Never raises: unknown or malformed
values are replaced by defaults, numeric knobs are clamped.

Accepts the snake_case keys used by this service and the camelCase keys that
older stored configs carry (organizationUrl, workItemTypes, queryType, ...).
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urlsplit

from src.app.datasources.schemas import (
    DatasourceConfig,
    DatasourceKind,
    MissingDateStrategy,
    QueryKind,
    QueryMode,
    QueryTemplate,
)

DEFAULT_REFRESH_MINUTES = 15
MIN_REFRESH_MINUTES = 5
MAX_REFRESH_MINUTES = 60

DEFAULT_MAX_ITEMS = 500
MIN_MAX_ITEMS = 1
MAX_MAX_ITEMS = 2000

DEFAULT_STAKEHOLDER_TAG_PREFIX = "Stakeholder:"
DEFAULT_REGION_TAG_PREFIX = "Region:"

# Canonical RoadmapItem fields that may be re-pointed via field_map.
MAPPABLE_FIELDS: tuple[str, ...] = (
    "title",
    "url",
    "stakeholders",
    "submitter_name",
    "submitter_department",
    "submitter_priority",
    "short_description",
    "long_description",
    "criticality",
    "disposition",
    "executive_sponsor",
    "start_date",
    "end_date",
    "requested_delivery_date",
    "t_shirt_size",
    "pillar",
    "regions",
    "expense_type",
    "point_of_contact",
    "lead",
)

# Stored camelCase field-map keys that do not snake_case onto a canonical name.
_FIELD_MAP_ALIASES = {
    "impactedStakeholders": "stakeholders",
    "impacted_stakeholders": "stakeholders",
    "region": "regions",
    "tShirtSize": "t_shirt_size",
}

_KIND_ALIASES = {
    "external_tracker": DatasourceKind.EXTERNAL_TRACKER,
    "azure-devops": DatasourceKind.EXTERNAL_TRACKER,
    "azure_devops": DatasourceKind.EXTERNAL_TRACKER,
    "tabular": DatasourceKind.TABULAR,
    "csv": DatasourceKind.TABULAR,
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", key).lower()


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    """First present value among snake_case / camelCase spellings."""
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    # bool is an int subclass; a stored `true` is not a number of minutes
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value:  # NaN
        return default
    return int(min(high, max(low, value)))


def _coerce_enum(enum_cls: type, value: Any, default: Any) -> Any:
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        return default
    candidate = value.strip().lower().replace("-", "_")
    for member in enum_cls:
        if member.value == candidate:
            return member
    return default


def _coerce_kind(value: Any) -> DatasourceKind:
    if isinstance(value, DatasourceKind):
        return value
    if isinstance(value, str):
        return _KIND_ALIASES.get(value.strip().lower(), DatasourceKind.TABULAR)
    return DatasourceKind.TABULAR


def _coerce_query_kind(value: Any) -> QueryKind:
    # Older configs call inline text "wiql"
    if isinstance(value, str) and value.strip().lower() == "saved":
        return QueryKind.SAVED
    if isinstance(value, QueryKind):
        return value
    return QueryKind.INLINE


def _coerce_record_types(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    types: list[str] = []
    for entry in value:
        if isinstance(entry, str) and entry.strip() and entry.strip() not in types:
            types.append(entry.strip())
    return types


def _coerce_field_map(value: Any) -> dict[str, str]:
    """Keep only string -> non-empty string overrides for canonical fields."""
    if not isinstance(value, dict):
        return {}
    field_map: dict[str, str] = {}
    for key, external in value.items():
        if not isinstance(key, str) or not isinstance(external, str):
            continue
        external = external.strip()
        if not external:
            continue
        canonical = _FIELD_MAP_ALIASES.get(key) or _snake(key)
        canonical = _FIELD_MAP_ALIASES.get(canonical, canonical)
        if canonical in MAPPABLE_FIELDS:
            field_map[canonical] = external
    return field_map


def parse_config_json(text: str | None) -> dict[str, Any]:
    """Parse stored config JSON; anything that is not a JSON object becomes {}."""
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def normalize_config(raw: Any, kind: Any = None) -> DatasourceConfig:
    """Produce a fully defaulted DatasourceConfig from an arbitrary value.

    Args:
        raw: Parsed JSON object, JSON text, an existing DatasourceConfig, or
            anything else (treated as empty).
        kind: Optional datasource kind overriding whatever `raw` says.

    Returns:
        A DatasourceConfig with every field populated and clamped.
    """
    if isinstance(raw, DatasourceConfig):
        raw = raw.model_dump(mode="json")
    elif isinstance(raw, (str, bytes)):
        raw = parse_config_json(raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw)
    if not isinstance(raw, dict):
        raw = {}

    resolved_kind = _coerce_kind(kind if kind is not None else _pick(raw, "kind", "type"))

    team = _pick(raw, "team")
    stakeholder_prefix = _clean_str(_pick(raw, "stakeholder_tag_prefix", "stakeholderTagPrefix"))
    region_prefix = _clean_str(_pick(raw, "region_tag_prefix", "regionTagPrefix"))

    return DatasourceConfig(
        kind=resolved_kind,
        endpoint_url=_clean_str(_pick(raw, "endpoint_url", "endpointUrl", "organizationUrl")),
        project=_clean_str(_pick(raw, "project")),
        team=(team.strip() or None) if isinstance(team, str) else None,
        query_mode=_coerce_enum(QueryMode, _pick(raw, "query_mode", "queryMode"), QueryMode.SIMPLE),
        query_kind=_coerce_query_kind(_pick(raw, "query_kind", "queryKind", "queryType")),
        query_text=_clean_str(_pick(raw, "query_text", "queryText")),
        query_template=_coerce_enum(
            QueryTemplate,
            _pick(raw, "query_template", "queryTemplate"),
            QueryTemplate.EPICS_FEATURES_ACTIVE,
        ),
        area_path=_clean_str(_pick(raw, "area_path", "areaPath")),
        record_types=_coerce_record_types(_pick(raw, "record_types", "recordTypes", "workItemTypes")),
        include_closed=_pick(raw, "include_closed", "includeClosed") is True,
        stakeholder_tag_prefix=stakeholder_prefix or DEFAULT_STAKEHOLDER_TAG_PREFIX,
        region_tag_prefix=region_prefix or DEFAULT_REGION_TAG_PREFIX,
        field_map=_coerce_field_map(_pick(raw, "field_map", "fieldMap")),
        refresh_minutes=_clamp_int(
            _pick(raw, "refresh_minutes", "refreshMinutes"),
            DEFAULT_REFRESH_MINUTES,
            MIN_REFRESH_MINUTES,
            MAX_REFRESH_MINUTES,
        ),
        max_items=_clamp_int(
            _pick(raw, "max_items", "maxItems"),
            DEFAULT_MAX_ITEMS,
            MIN_MAX_ITEMS,
            MAX_MAX_ITEMS,
        ),
        missing_date_strategy=_coerce_enum(
            MissingDateStrategy,
            _pick(raw, "missing_date_strategy", "missingDateStrategy"),
            MissingDateStrategy.FALLBACK,
        ),
    )


def normalize_organization_url(value: str | None) -> str | None:
    """Collapse tracker organization URLs to one canonical form.

    ``https://<org>.visualstudio.com/...`` and ``https://dev.azure.com/<org>/...``
    both become ``https://dev.azure.com/<org>``. Any other absolute URL passes
    through trimmed (without a trailing slash). Unparsable input yields None.
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    try:
        parts = urlsplit(trimmed)
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if not parts.scheme or not host:
        return None
    if host.endswith("visualstudio.com"):
        org = host.split(".")[0]
        return f"https://dev.azure.com/{org}"
    if host == "dev.azure.com":
        segments = [segment for segment in parts.path.split("/") if segment]
        if not segments:
            return None
        return f"https://dev.azure.com/{segments[0]}"
    return trimmed.rstrip("/")


def is_config_complete(config: DatasourceConfig) -> bool:
    """True when a sync can be attempted: endpoint resolves and project is set."""
    return bool(normalize_organization_url(config.endpoint_url)) and bool(config.project)
