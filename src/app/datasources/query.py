"""Query construction for the work tracker.

A datasource config selects exactly one query shape:

- SimpleQuery: built from a curated template plus filters, no I/O
- InlineQuery: user-supplied WIQL text, used as-is
- SavedQuery: a saved-query id resolved to WIQL with one tracker call

query_spec_for() picks the shape; build_query() is the single dispatch point.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from src.app.datasources.errors import ConfigIncomplete
from src.app.datasources.schemas import DatasourceConfig, QueryKind, QueryMode, QueryTemplate

if TYPE_CHECKING:
    from src.app.datasources.client import TrackerClient

TEMPLATE_RECORD_TYPES: dict[QueryTemplate, tuple[str, ...]] = {
    QueryTemplate.EPICS_FEATURES_ACTIVE: ("Epic", "Feature"),
    QueryTemplate.STORIES_ACTIVE: ("User Story", "Product Backlog Item"),
    QueryTemplate.RECENTLY_CHANGED: ("Epic", "Feature", "User Story", "Product Backlog Item"),
}

RECENTLY_CHANGED_DAYS = 90


@dataclass(frozen=True)
class SimpleQuery:
    template: QueryTemplate
    record_types: tuple[str, ...] = field(default_factory=tuple)
    include_closed: bool = False
    area_path: str = ""


@dataclass(frozen=True)
class InlineQuery:
    text: str


@dataclass(frozen=True)
class SavedQuery:
    query_id: str


QuerySpec = Union[SimpleQuery, InlineQuery, SavedQuery]


def query_spec_for(config: DatasourceConfig) -> QuerySpec:
    """Select the query shape for a normalized config."""
    if config.query_mode != QueryMode.ADVANCED:
        return SimpleQuery(
            template=config.query_template,
            record_types=tuple(config.record_types),
            include_closed=config.include_closed,
            area_path=config.area_path,
        )
    if config.query_kind == QueryKind.SAVED:
        return SavedQuery(query_id=config.query_text)
    return InlineQuery(text=config.query_text)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_simple_query(spec: SimpleQuery) -> str:
    """Render a SimpleQuery as WIQL. Identical input gives an identical string."""
    types = spec.record_types or TEMPLATE_RECORD_TYPES[spec.template]
    clauses = [f"[System.WorkItemType] IN ({', '.join(_quote(t) for t in types)})"]
    if not spec.include_closed:
        clauses.append("[System.State] <> 'Closed'")
    if spec.template == QueryTemplate.RECENTLY_CHANGED:
        clauses.append(f"[System.ChangedDate] >= @today - {RECENTLY_CHANGED_DAYS}")
    if spec.area_path:
        clauses.append(f"[System.AreaPath] UNDER {_quote(spec.area_path)}")
    return (
        "SELECT [System.Id] FROM WorkItems WHERE "
        + " AND ".join(clauses)
        + " ORDER BY [System.ChangedDate] DESC"
    )


async def build_query(config: DatasourceConfig, client: TrackerClient | None = None) -> str:
    """Produce the WIQL text a sync will run.

    Args:
        config: Normalized datasource config.
        client: Tracker client, needed only to resolve saved queries.

    Raises:
        ConfigIncomplete: Advanced mode with empty query text or saved-query id.
        QueryResolutionError: The saved query could not be loaded.
    """
    spec = query_spec_for(config)
    if isinstance(spec, SimpleQuery):
        return build_simple_query(spec)
    if isinstance(spec, InlineQuery):
        if not spec.text:
            raise ConfigIncomplete("Query text is required.")
        return spec.text
    if not spec.query_id:
        raise ConfigIncomplete("Saved query id is required.")
    if client is None:
        raise ConfigIncomplete("A tracker connection is required to resolve a saved query.")
    return await client.resolve_saved_query(config.project, spec.query_id)
