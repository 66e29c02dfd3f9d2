"""Datasource service -- snapshot cache and staleness policy over the tracker client.

DatasourceService is the one entry point the HTTP layer (and any other
caller) uses. get_items() decides between four outcomes:

1. Fresh cache hit: snapshot younger than refresh_minutes, no network.
2. Live sync success: fetch, map, replace the snapshot wholesale.
3. Live sync failure with fallback: keep the old snapshot, serve it stale.
4. Live sync failure without cache: re-raise the UpstreamError.

Terminal configuration errors (ConfigIncomplete, MissingCredential) never
fall back to a snapshot. MissingCredential is raised even when an old
snapshot exists, so an expired or removed token is noticed immediately.

Concurrent get_items() calls for the same roadmap and config version share a
single in-flight sync task; a caller that goes away does not cancel it.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from datetime import datetime, timezone
from functools import partial
from typing import Any
from urllib.parse import unquote, urlsplit

import structlog
from cryptography.fernet import InvalidToken

from src.app.config import Settings, get_settings
from src.app.core.monitoring import record_sync_outcome, track_sync
from src.app.core.security import SecretStore
from src.app.datasources.client import TrackerClient
from src.app.datasources.errors import (
    ConfigIncomplete,
    InvalidRecordUrl,
    MissingCredential,
    UpstreamError,
)
from src.app.datasources.field_mapping import (
    build_field_map,
    build_work_item_url,
    collect_fields,
    map_work_items,
)
from src.app.datasources.normalizer import (
    is_config_complete,
    normalize_config,
    normalize_organization_url,
)
from src.app.datasources.query import InlineQuery, SavedQuery, build_query, query_spec_for
from src.app.datasources.schemas import (
    DatasourceConfig,
    DatasourceKind,
    DatasourceRecord,
    DatasourceSummary,
    DebugPayload,
    ItemsResult,
    RelatedWorkItem,
    Snapshot,
    ValidationReport,
    WorkItemComment,
    WorkItemLookup,
)
from src.app.datasources.store import DatasourceStore, load_snapshot
from src.app.datasources.tabular import parse_roadmap_csv
from src.app.datasources.text import extract_display_value

logger = structlog.get_logger(__name__)

VALIDATION_SAMPLE_SIZE = 10
MAX_DEBUG_SAMPLE_SIZE = 50

ClientFactory = Callable[[str, str], TrackerClient]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_client_factory(settings: Settings) -> ClientFactory:
    """TrackerClient factory configured from settings."""

    def factory(base_url: str, token: str) -> TrackerClient:
        return TrackerClient(
            base_url,
            token,
            timeout=settings.TRACKER_REQUEST_TIMEOUT,
            max_attempts=settings.TRACKER_MAX_ATTEMPTS,
            batch_size=settings.TRACKER_BATCH_SIZE,
            concurrency=settings.TRACKER_BATCH_CONCURRENCY,
        )

    return factory


def parse_record_url(value: str) -> tuple[str, str, str] | None:
    """Split a tracker work item UI URL into (organization URL, project, id).

    Understands ``https://<org>.visualstudio.com/<project>/_workitems/edit/<id>``
    and ``https://dev.azure.com/<org>/<project>/_workitems/edit/<id>``.
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    try:
        parts = urlsplit(trimmed)
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    segments = [segment for segment in parts.path.split("/") if segment]
    org = project = item_id = ""
    if host.endswith("visualstudio.com"):
        org = host.split(".")[0]
        project = segments[0] if segments else ""
        item_id = segments[-1] if segments else ""
    elif host == "dev.azure.com":
        org = segments[0] if segments else ""
        project = segments[1] if len(segments) > 1 else ""
        item_id = segments[-1] if segments else ""
    if not org or not project or not re.fullmatch(r"\d+", item_id):
        return None
    return f"https://dev.azure.com/{org}", unquote(project), item_id


def _str_field(fields: dict[str, Any], name: str) -> str | None:
    value = fields.get(name)
    return value if isinstance(value, str) else None


def build_summary(record: DatasourceRecord | None) -> DatasourceSummary:
    """Public view of a datasource row; the credential is reduced to has_secret."""
    if record is None:
        return DatasourceSummary(kind=DatasourceKind.TABULAR)
    config = (
        normalize_config(record.config_json, record.kind)
        if record.kind == DatasourceKind.EXTERNAL_TRACKER
        else None
    )
    return DatasourceSummary(
        kind=record.kind,
        config=config,
        has_secret=record.has_secret,
        last_sync_at=record.last_sync_at,
        last_sync_duration_ms=record.last_sync_duration_ms,
        last_sync_item_count=record.last_sync_item_count,
        last_sync_error=record.last_sync_error,
        last_snapshot_at=record.snapshot_captured_at,
    )


class DatasourceService:
    """Sync engine for roadmap datasources.

    Args:
        store: Persistence for datasource rows.
        secrets: Encrypts/decrypts stored credentials.
        client_factory: Builds a TrackerClient for (organization URL, token).
            Defaults to one configured from settings.
        clock: Returns the current UTC time (injectable for staleness tests).
    """

    def __init__(
        self,
        store: DatasourceStore,
        secrets: SecretStore,
        *,
        client_factory: ClientFactory | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self._client_factory = client_factory or default_client_factory(get_settings())
        self._clock = clock or _utcnow
        self._inflight: dict[tuple[str, int], asyncio.Task[ItemsResult]] = {}

    # ── Helpers ─────────────────────────────────────────────────────────────

    @staticmethod
    def _require_connection(config: DatasourceConfig) -> str:
        """Return the normalized organization URL or raise ConfigIncomplete."""
        if not is_config_complete(config):
            raise ConfigIncomplete("Work tracker configuration is incomplete.")
        spec = query_spec_for(config)
        if isinstance(spec, InlineQuery) and not spec.text:
            raise ConfigIncomplete("Query text is required.")
        if isinstance(spec, SavedQuery) and not spec.query_id:
            raise ConfigIncomplete("Saved query id is required.")
        return normalize_organization_url(config.endpoint_url)

    def _decrypt(self, record: DatasourceRecord | None) -> str:
        if record is None or not record.encrypted_credential:
            raise MissingCredential("Work tracker access token is missing.")
        try:
            return self._secrets.decrypt(record.encrypted_credential)
        except InvalidToken as exc:
            logger.warning("datasource.credential_unreadable", roadmap_id=record.roadmap_id)
            raise MissingCredential(
                "Stored work tracker access token could not be decrypted. Save it again."
            ) from exc

    async def _credential_or_stored(self, credential: str | None, roadmap_id: str | None) -> str:
        if credential and credential.strip():
            return credential.strip()
        if roadmap_id is None:
            raise MissingCredential("An access token is required.")
        return self._decrypt(await self._store.get(roadmap_id))

    async def _external_context(self, roadmap_id: str) -> tuple[DatasourceConfig, str, TrackerClient]:
        """Config, organization URL and an authenticated client for a tracker roadmap."""
        record = await self._store.get(roadmap_id)
        if record is None or record.kind != DatasourceKind.EXTERNAL_TRACKER:
            raise ConfigIncomplete("Datasource is not an external work tracker.")
        config = normalize_config(record.config_json, record.kind)
        base_url = self._require_connection(config)
        token = self._decrypt(record)
        return config, base_url, self._client_factory(base_url, token)

    # ── Items ───────────────────────────────────────────────────────────────

    async def get_items(self, roadmap_id: str, force_refresh: bool = False) -> ItemsResult:
        """Current items for a roadmap, from cache or a live sync.

        Raises:
            ConfigIncomplete: Endpoint, project or query text missing.
            MissingCredential: No usable credential is stored.
            UpstreamError: The sync failed and there is no snapshot to serve.
        """
        record = await self._store.get(roadmap_id)
        if record is None or record.kind == DatasourceKind.TABULAR:
            items = parse_roadmap_csv(record.tabular_text or "") if record else []
            return ItemsResult(items=items)

        config = normalize_config(record.config_json, record.kind)
        base_url = self._require_connection(config)

        snapshot = load_snapshot(record)
        if not force_refresh and snapshot is not None:
            age_minutes = (self._clock() - snapshot.captured_at).total_seconds() / 60
            if age_minutes <= config.refresh_minutes:
                record_sync_outcome("cache_hit")
                logger.debug(
                    "datasource.cache_hit",
                    roadmap_id=roadmap_id,
                    age_minutes=round(age_minutes, 2),
                    item_count=len(snapshot.items),
                )
                return ItemsResult(items=snapshot.items, truncated=snapshot.truncated)

        if not record.encrypted_credential:
            raise MissingCredential("Work tracker access token is missing.")

        key = (roadmap_id, record.config_version)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._sync(record, config, base_url, snapshot))
            self._inflight[key] = task
            task.add_done_callback(partial(self._forget, key))
        else:
            logger.debug("datasource.sync_joined", roadmap_id=roadmap_id)
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, int], task: asyncio.Task[ItemsResult]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome retrieved so an unawaited failure is not reported twice
        if not task.cancelled():
            task.exception()

    async def _sync(
        self,
        record: DatasourceRecord,
        config: DatasourceConfig,
        base_url: str,
        snapshot: Snapshot | None,
    ) -> ItemsResult:
        roadmap_id = record.roadmap_id
        token = self._decrypt(record)
        client = self._client_factory(base_url, token)

        with track_sync() as tracker:
            started = time.monotonic()
            try:
                outcome = await client.fetch_all(config)
                items = map_work_items(outcome.records, config, base_url)
            except UpstreamError as exc:
                await self._store.record_sync_failure(roadmap_id, at=self._clock(), error=exc.message)
                if snapshot is None:
                    tracker["outcome"] = "failed"
                    logger.error("datasource.sync_failed", roadmap_id=roadmap_id, error=exc.message)
                    raise
                tracker["outcome"] = "fallback"
                logger.warning(
                    "datasource.sync_fallback",
                    roadmap_id=roadmap_id,
                    error=exc.message,
                    snapshot_at=snapshot.captured_at.isoformat(),
                )
                return ItemsResult(
                    items=snapshot.items,
                    stale=True,
                    truncated=snapshot.truncated,
                    warning=f"Using cached data from {snapshot.captured_at.isoformat()}",
                )

            duration_ms = int((time.monotonic() - started) * 1000)
            fresh = Snapshot(items=items, captured_at=self._clock(), truncated=outcome.truncated)
            written = await self._store.write_snapshot(
                roadmap_id,
                expected_version=record.config_version,
                snapshot=fresh,
                duration_ms=duration_ms,
            )
            tracker["outcome"] = "success"
            if written:
                logger.info(
                    "datasource.sync_succeeded",
                    roadmap_id=roadmap_id,
                    item_count=len(items),
                    record_count=len(outcome.records),
                    truncated=outcome.truncated,
                    duration_ms=duration_ms,
                )
            else:
                logger.info(
                    "datasource.snapshot_discarded",
                    roadmap_id=roadmap_id,
                    config_version=record.config_version,
                )
            return ItemsResult(items=items, truncated=outcome.truncated)

    # ── Configuration ───────────────────────────────────────────────────────

    async def get_summary(self, roadmap_id: str) -> DatasourceSummary:
        return build_summary(await self._store.ensure(roadmap_id))

    async def save_config(
        self,
        roadmap_id: str,
        kind: DatasourceKind | str,
        raw_config: Any,
        credential: str | None = None,
        tabular_text: str | None = None,
    ) -> DatasourceSummary:
        """Persist a datasource configuration.

        Args:
            roadmap_id: Roadmap identifier.
            kind: Datasource kind; anything unrecognized is tabular.
            raw_config: Untyped config, normalized before storing.
            credential: None keeps the stored token, "" clears it, anything
                else replaces it. Tabular datasources never keep a token.
            tabular_text: CSV text to store for a tabular roadmap.

        A changed kind or config clears the cached snapshot.
        """
        config = normalize_config(raw_config, kind)
        existing = await self._store.get(roadmap_id)

        if config.kind == DatasourceKind.TABULAR:
            config_json = "{}"
            keep_credential, encrypted = False, None
        else:
            config_json = config.model_dump_json()
            if credential is None:
                keep_credential, encrypted = True, None
            elif not credential.strip():
                keep_credential, encrypted = False, None
            else:
                keep_credential, encrypted = False, self._secrets.encrypt(credential.strip())

        changed = (
            existing is None
            or existing.kind != config.kind
            or normalize_config(existing.config_json, existing.kind) != normalize_config(config_json, config.kind)
        )

        record = await self._store.save_config(
            roadmap_id,
            kind=config.kind,
            config_json=config_json,
            encrypted_credential=encrypted,
            keep_credential=keep_credential,
            clear_snapshot=changed,
        )
        if tabular_text is not None and config.kind == DatasourceKind.TABULAR:
            record = await self._store.set_tabular_text(roadmap_id, tabular_text)
        return build_summary(record)

    async def validate_config(
        self,
        raw_config: Any,
        credential: str | None,
        *,
        roadmap_id: str | None = None,
    ) -> ValidationReport:
        """Dry-run a config against the tracker without touching any snapshot.

        Runs the query, checks mapped field names against the tracker's field
        catalogue, and fetches up to 10 sample records to find canonical
        fields that are empty everywhere. Findings are warnings, not errors.

        Args:
            raw_config: Untyped config to validate.
            credential: Token to use; when empty the stored token of
                `roadmap_id` is used instead.
            roadmap_id: Roadmap whose stored token may be reused.
        """
        config = normalize_config(raw_config, DatasourceKind.EXTERNAL_TRACKER)
        base_url = self._require_connection(config)
        token = await self._credential_or_stored(credential, roadmap_id)
        client = self._client_factory(base_url, token)

        wiql = await build_query(config, client)
        ids, _ = await client.run_query(config.project, wiql)
        sample_ids = ids[:VALIDATION_SAMPLE_SIZE]

        field_map = build_field_map(config)
        report = ValidationReport(sample_size=len(sample_ids))

        try:
            known_fields: set[str] | None = await client.list_field_names()
        except UpstreamError as exc:
            logger.warning("datasource.field_catalogue_unavailable", error=exc.message)
            known_fields = None

        if known_fields is not None:
            for external in dict.fromkeys(field_map.values()):
                if external not in known_fields:
                    report.unknown_fields.append(external)
            if report.unknown_fields:
                report.warnings.append(f"Unknown fields: {', '.join(report.unknown_fields)}")

        if not sample_ids:
            report.warnings.append("No work items returned. Field mapping could not be verified.")
            return report

        fields = [name for name in collect_fields(config) if name not in report.unknown_fields]
        try:
            batch = await client.fetch_batch(config.project, sample_ids, fields)
        except UpstreamError as exc:
            # Without the catalogue an unknown mapped field fails the batch
            if known_fields is not None:
                raise
            logger.warning("datasource.validation_sample_failed", error=exc.message)
            report.warnings.append(f"Sample work items could not be fetched: {exc.message}")
            return report
        samples = [
            entry.get("fields") or {}
            for entry in batch.get("value") or []
            if isinstance(entry, dict)
        ]

        for canonical, external in field_map.items():
            if external in report.unknown_fields:
                report.empty_fields.append(canonical)
                continue
            if not any(extract_display_value(sample.get(external)) for sample in samples):
                report.empty_fields.append(canonical)
                report.warnings.append(
                    f"Field '{canonical}' ({external}) is empty in all {len(samples)} sampled work items."
                )
        logger.info(
            "datasource.validated",
            sample_size=len(sample_ids),
            unknown_fields=len(report.unknown_fields),
            empty_fields=len(report.empty_fields),
        )
        return report

    # ── Organization Lookups ────────────────────────────────────────────────

    async def list_projects(
        self,
        endpoint_url: str,
        credential: str | None,
        *,
        roadmap_id: str | None = None,
    ) -> list[str]:
        base_url = normalize_organization_url(endpoint_url)
        if not base_url:
            raise ConfigIncomplete("Organization URL is required.")
        token = await self._credential_or_stored(credential, roadmap_id)
        return await self._client_factory(base_url, token).list_projects()

    async def resolve_from_record_url(
        self,
        url: str,
        credential: str | None,
        *,
        roadmap_id: str | None = None,
    ) -> WorkItemLookup:
        """Turn a work item link into connection settings.

        Without any credential the parsed URL parts are returned as-is;
        with one, the work item's type and area path are looked up too.
        """
        parsed = parse_record_url(url)
        if parsed is None:
            raise InvalidRecordUrl("Unable to parse work item URL.")
        endpoint_url, project, item_id = parsed
        lookup = WorkItemLookup(endpoint_url=endpoint_url, project=project, id=item_id)

        try:
            token = await self._credential_or_stored(credential, roadmap_id)
        except MissingCredential:
            return lookup

        detail = await self._client_factory(endpoint_url, token).get_work_item(
            project, item_id, fields=["System.WorkItemType", "System.AreaPath"]
        )
        fields = detail.get("fields") or {}
        return lookup.model_copy(
            update={
                "work_item_type": extract_display_value(fields.get("System.WorkItemType")) or None,
                "area_path": extract_display_value(fields.get("System.AreaPath")) or None,
            }
        )

    # ── Diagnostics & Item Details ──────────────────────────────────────────

    async def debug_payload(self, roadmap_id: str, sample_size: int = 5) -> DebugPayload:
        """What a sync would send and receive, without writing anything."""
        config, _, client = await self._external_context(roadmap_id)
        wiql = await build_query(config, client)
        ids, query_response = await client.run_query(config.project, wiql)
        sample_ids = ids[: max(1, min(MAX_DEBUG_SAMPLE_SIZE, sample_size))]
        fields = collect_fields(config)
        batch_response = (
            await client.fetch_batch(config.project, sample_ids, fields) if sample_ids else None
        )
        return DebugPayload(
            config=config,
            query=wiql,
            fields=fields,
            sample_ids=sample_ids,
            total_work_items=len(ids),
            query_response=query_response,
            batch_response=batch_response,
        )

    async def get_comments(self, roadmap_id: str, item_id: str) -> list[WorkItemComment]:
        config, _, client = await self._external_context(roadmap_id)
        comments = await client.get_comments(config.project, item_id)
        return [
            WorkItemComment(
                id=comment.get("id") or 0,
                text=extract_display_value(comment.get("text")),
                author=extract_display_value(comment.get("createdBy")),
                created_date=comment.get("createdDate"),
                revised_date=comment.get("revisedDate"),
            )
            for comment in comments
        ]

    async def get_related_items(self, roadmap_id: str, item_id: str) -> list[RelatedWorkItem]:
        config, base_url, client = await self._external_context(roadmap_id)
        records = await client.get_related_records(config.project, item_id)
        related: list[RelatedWorkItem] = []
        for record in records:
            fields = record.get("fields") or {}
            text = partial(_str_field, fields)
            related.append(
                RelatedWorkItem(
                    id=record["id"],
                    title=text("System.Title") or f"Work Item {record['id']}",
                    state=text("System.State") or "Unknown",
                    created_date=text("System.CreatedDate"),
                    changed_date=text("System.ChangedDate"),
                    resolved_date=text("Microsoft.VSTS.Common.ResolvedDate"),
                    closed_date=text("Microsoft.VSTS.Common.ClosedDate"),
                    target_date=text("Microsoft.VSTS.Scheduling.TargetDate"),
                    url=build_work_item_url(base_url, config.project, record["id"]),
                )
            )
        return related
