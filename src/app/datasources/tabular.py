"""CSV import/export for tabular roadmaps.

The column layout matches the spreadsheets teams already upload: camelCase
headers, stakeholders and regions as delimited strings. snake_case headers
are accepted too. Values go through the same normalizers the tracker mapper
uses, so both sources produce identical RoadmapItems.
"""

from __future__ import annotations

import csv
import io

from src.app.datasources.schemas import RoadmapItem
from src.app.datasources.text import (
    normalize_regions,
    normalize_stakeholders,
    normalize_t_shirt_size,
    split_list,
    title_case,
    to_iso_date,
    to_priority,
)

# (CSV header, RoadmapItem field) in export order
CSV_COLUMNS: tuple[tuple[str, str], ...] = (
    ("id", "id"),
    ("title", "title"),
    ("url", "url"),
    ("impactedStakeholders", "stakeholders"),
    ("submitterName", "submitter_name"),
    ("submitterDepartment", "submitter_department"),
    ("submitterPriority", "submitter_priority"),
    ("shortDescription", "short_description"),
    ("longDescription", "long_description"),
    ("criticality", "criticality"),
    ("disposition", "disposition"),
    ("executiveSponsor", "executive_sponsor"),
    ("startDate", "start_date"),
    ("endDate", "end_date"),
    ("requestedDeliveryDate", "requested_delivery_date"),
    ("tShirtSize", "t_shirt_size"),
    ("pillar", "pillar"),
    ("region", "regions"),
    ("expenseType", "expense_type"),
    ("pointOfContact", "point_of_contact"),
    ("lead", "lead"),
)

_HEADER_TO_FIELD = {header.lower(): field for header, field in CSV_COLUMNS}
_HEADER_TO_FIELD.update({field: field for _, field in CSV_COLUMNS})
_HEADER_TO_FIELD["regions"] = "regions"


def _row_to_item(row: dict[str, str], index: int) -> RoadmapItem:
    values: dict[str, str] = {}
    for header, raw in row.items():
        if header is None:
            continue
        field = _HEADER_TO_FIELD.get(header.strip().lower())
        if field and field not in values:
            values[field] = (raw or "").strip() if isinstance(raw, str) else ""

    def text(name: str) -> str:
        return values.get(name, "")

    return RoadmapItem(
        id=text("id") or str(index),
        title=text("title"),
        url=text("url"),
        stakeholders=normalize_stakeholders(split_list(text("stakeholders"))),
        submitter_name=text("submitter_name"),
        submitter_department=text("submitter_department"),
        submitter_priority=to_priority(text("submitter_priority")),
        short_description=text("short_description"),
        long_description=text("long_description"),
        criticality=text("criticality"),
        disposition=text("disposition"),
        executive_sponsor=text("executive_sponsor"),
        start_date=to_iso_date(text("start_date")),
        end_date=to_iso_date(text("end_date")),
        requested_delivery_date=to_iso_date(text("requested_delivery_date")),
        t_shirt_size=normalize_t_shirt_size(text("t_shirt_size")),
        pillar=title_case(text("pillar")),
        regions=normalize_regions(split_list(text("regions"))),
        expense_type=text("expense_type"),
        point_of_contact=text("point_of_contact"),
        lead=text("lead"),
    )


def parse_roadmap_csv(text: str) -> list[RoadmapItem]:
    """Parse CSV text with a header row into RoadmapItems.

    Blank lines are skipped; rows without an id get their 0-based row index.
    """
    if not text or not text.strip():
        return []
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    items: list[RoadmapItem] = []
    for index, row in enumerate(reader):
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        items.append(_row_to_item(row, index))
    return items


def _cell(item: RoadmapItem, field: str) -> str:
    value = getattr(item, field)
    if value is None:
        return ""
    if isinstance(value, list):
        return "; ".join(value)
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def build_csv_from_items(items: list[RoadmapItem]) -> str:
    """Serialize items with the same header layout parse_roadmap_csv() reads."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([header for header, _ in CSV_COLUMNS])
    for item in items:
        writer.writerow([_cell(item, field) for _, field in CSV_COLUMNS])
    return buffer.getvalue()
