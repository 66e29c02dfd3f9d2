"""Async HTTP client for the work tracker REST API.

Provides TrackerClient with retry logic (tenacity, exponential backoff 1-10s)
on transport failures, timeouts, 429 and 5xx. Every other non-2xx response
fails immediately. All failures surface as UpstreamError so the sync engine
can decide whether a cached snapshot may be served instead.

Authentication is HTTP Basic with an empty user name and the access token as
password, sent on every call.
"""

from __future__ import annotations

import asyncio
import base64
import re
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.app.core.monitoring import record_tracker_request
from src.app.datasources.errors import QueryResolutionError, UpstreamError
from src.app.datasources.field_mapping import collect_fields
from src.app.datasources.query import build_query
from src.app.datasources.schemas import DatasourceConfig, FetchOutcome

logger = structlog.get_logger(__name__)

# API versions differ per endpoint family
WIQL_API_VERSION = "7.1-preview.2"
BATCH_API_VERSION = "7.1-preview.1"
WORK_ITEM_API_VERSION = "7.1-preview.3"
PROJECTS_API_VERSION = "7.1-preview.4"
FIELDS_API_VERSION = "7.1-preview.2"
QUERIES_API_VERSION = "7.1-preview.2"

MAX_BATCH_SIZE = 200

RELATED_LINK_TYPE = "System.LinkTypes.Related"
RELATED_FIELDS = [
    "System.Title",
    "System.State",
    "System.CreatedDate",
    "System.ChangedDate",
    "Microsoft.VSTS.Common.ResolvedDate",
    "Microsoft.VSTS.Common.ClosedDate",
    "Microsoft.VSTS.Scheduling.TargetDate",
]

_WORK_ITEM_ID_IN_URL = re.compile(r"workItems/(\d+)", re.IGNORECASE)


def build_auth_headers(token: str) -> dict[str, str]:
    encoded = base64.b64encode(f":{token}".encode("utf-8")).decode("ascii")
    return {
        "Authorization": f"Basic {encoded}",
        "Content-Type": "application/json",
    }


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


def _chunks(ids: list[int], size: int) -> list[list[int]]:
    return [ids[i : i + size] for i in range(0, len(ids), size)]


class TrackerClient:
    """Async client for one tracker organization.

    Args:
        base_url: Normalized organization URL (see normalize_organization_url).
        token: Plaintext access token. Lives only as long as this client.
        timeout: Per-request timeout in seconds.
        max_attempts: Total attempts per call, including the first.
        batch_size: Ids per workitemsbatch call (capped at 200).
        concurrency: Maximum batch calls in flight at once.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        retry_wait: Optional tenacity wait strategy override.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        batch_size: int = MAX_BATCH_SIZE,
        concurrency: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = build_auth_headers(token)
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._batch_size = max(1, min(MAX_BATCH_SIZE, batch_size))
        self._concurrency = max(1, concurrency)
        self._transport = transport
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client bound to this organization."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def _project_url(self, project: str, path: str) -> str:
        return f"{self._base_url}/{quote(project, safe='')}/_apis/wit/{path}"

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        failure: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        error_cls: type[UpstreamError] = UpstreamError,
    ) -> Any:
        """Perform one API call with retries; return the decoded JSON body.

        Raises:
            UpstreamError (or `error_cls`): final non-2xx, transport failure,
                timeout, or an unparsable body.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    async with self._client() as client:
                        response = await client.request(method, url, params=params, json=json)
                    record_tracker_request(operation, response.status_code)
                    response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning(
                "tracker.request_failed",
                operation=operation,
                status_code=status,
            )
            raise error_cls(failure, status_code=status, body=exc.response.text.strip()) from exc
        except httpx.TimeoutException as exc:
            record_tracker_request(operation, "timeout")
            logger.warning("tracker.request_timeout", operation=operation, timeout=self._timeout)
            raise error_cls(f"{failure}: request timed out after {self._timeout:g}s") from exc
        except httpx.HTTPError as exc:
            record_tracker_request(operation, "error")
            logger.warning("tracker.request_error", operation=operation, error=str(exc))
            raise error_cls(f"{failure}: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise error_cls(f"{failure}: response was not valid JSON") from exc

    # ── Query Execution ─────────────────────────────────────────────────────

    async def resolve_saved_query(self, project: str, query_id: str) -> str:
        """Load a saved query and return its WIQL text."""
        data = await self._request(
            "saved_query",
            "GET",
            self._project_url(project, f"queries/{quote(query_id, safe='')}"),
            params={"api-version": QUERIES_API_VERSION},
            failure="Failed to load saved query",
            error_cls=QueryResolutionError,
        )
        wiql = data.get("wiql") if isinstance(data, dict) else None
        if not isinstance(wiql, str) or not wiql.strip():
            raise QueryResolutionError(f"Saved query {query_id} has no query text")
        return wiql

    async def run_query(self, project: str, wiql: str) -> tuple[list[int], dict[str, Any]]:
        """POST a WIQL query; return work item ids in result order plus the raw body."""
        data = await self._request(
            "wiql",
            "POST",
            self._project_url(project, "wiql"),
            params={"api-version": WIQL_API_VERSION},
            json={"query": wiql},
            failure="Work tracker query failed",
        )
        if not isinstance(data, dict):
            data = {}
        ids: list[int] = []
        for entry in data.get("workItems") or []:
            if isinstance(entry, dict) and isinstance(entry.get("id"), int):
                ids.append(entry["id"])
        return ids, data

    async def fetch_batch(
        self, project: str, ids: list[int], fields: list[str]
    ) -> dict[str, Any]:
        """POST one workitemsbatch call (at most 200 ids); return the raw body."""
        data = await self._request(
            "workitemsbatch",
            "POST",
            self._project_url(project, "workitemsbatch"),
            params={"api-version": BATCH_API_VERSION},
            json={"ids": ids, "fields": fields},
            failure="Work item batch failed",
        )
        return data if isinstance(data, dict) else {}

    async def fetch_records(
        self, project: str, ids: list[int], fields: list[str]
    ) -> list[dict[str, Any]]:
        """Fetch records for `ids` in chunks, returned in the order of `ids`.

        Chunks run concurrently under a semaphore. If any chunk fails the
        remaining chunks are cancelled and the error propagates.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def fetch_chunk(chunk: list[int]) -> list[dict[str, Any]]:
            async with semaphore:
                data = await self.fetch_batch(project, chunk, fields)
            return [entry for entry in data.get("value") or [] if isinstance(entry, dict)]

        tasks = [asyncio.ensure_future(fetch_chunk(chunk)) for chunk in _chunks(ids, self._batch_size)]
        try:
            chunk_results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        by_id: dict[int, dict[str, Any]] = {}
        for records in chunk_results:
            for record in records:
                record_id = record.get("id")
                if isinstance(record_id, int):
                    by_id[record_id] = record
        return [by_id[record_id] for record_id in ids if record_id in by_id]

    async def fetch_all(self, config: DatasourceConfig) -> FetchOutcome:
        """Run the configured query and fetch every matching record.

        Returns raw records in the tracker's query order. `truncated` is set
        when the query produced at least `max_items` ids.
        """
        wiql = await build_query(config, self)
        ids, _ = await self.run_query(config.project, wiql)

        truncated = len(ids) >= config.max_items
        ids = ids[: config.max_items]
        if not ids:
            return FetchOutcome(records=[], truncated=truncated)

        records = await self.fetch_records(config.project, ids, collect_fields(config))
        logger.info(
            "tracker.fetch_completed",
            project=config.project,
            id_count=len(ids),
            record_count=len(records),
            truncated=truncated,
        )
        return FetchOutcome(records=records, truncated=truncated)

    # ── Organization Lookups ────────────────────────────────────────────────

    async def list_projects(self) -> list[str]:
        data = await self._request(
            "projects",
            "GET",
            f"{self._base_url}/_apis/projects",
            params={"api-version": PROJECTS_API_VERSION},
            failure="Project lookup failed",
        )
        entries = data.get("value") if isinstance(data, dict) else None
        return [
            entry["name"]
            for entry in entries or []
            if isinstance(entry, dict) and isinstance(entry.get("name"), str) and entry["name"]
        ]

    async def list_field_names(self) -> set[str]:
        """Reference names of every field the organization defines."""
        data = await self._request(
            "fields",
            "GET",
            f"{self._base_url}/_apis/wit/fields",
            params={"api-version": FIELDS_API_VERSION},
            failure="Field catalogue lookup failed",
        )
        entries = data.get("value") if isinstance(data, dict) else None
        return {
            entry["referenceName"]
            for entry in entries or []
            if isinstance(entry, dict) and isinstance(entry.get("referenceName"), str)
        }

    # ── Single Work Item ────────────────────────────────────────────────────

    async def get_work_item(
        self,
        project: str,
        item_id: str,
        *,
        fields: list[str] | None = None,
        expand_relations: bool = False,
    ) -> dict[str, Any]:
        params = {"api-version": WORK_ITEM_API_VERSION}
        if fields:
            params["fields"] = ",".join(fields)
        if expand_relations:
            params["$expand"] = "relations"
        data = await self._request(
            "workitem",
            "GET",
            self._project_url(project, f"workitems/{quote(str(item_id), safe='')}"),
            params=params,
            failure="Unable to load work item details",
        )
        return data if isinstance(data, dict) else {}

    async def get_comments(self, project: str, item_id: str) -> list[dict[str, Any]]:
        data = await self._request(
            "comments",
            "GET",
            self._project_url(project, f"workItems/{quote(str(item_id), safe='')}/comments"),
            params={"api-version": WORK_ITEM_API_VERSION},
            failure="Comments request failed",
        )
        comments = data.get("comments") if isinstance(data, dict) else None
        return [entry for entry in comments or [] if isinstance(entry, dict)]

    async def get_related_records(self, project: str, item_id: str) -> list[dict[str, Any]]:
        """Records linked to `item_id` by a Related link, fetched in one batch."""
        detail = await self.get_work_item(project, item_id, expand_relations=True)
        related_ids: list[int] = []
        for relation in detail.get("relations") or []:
            if not isinstance(relation, dict) or relation.get("rel") != RELATED_LINK_TYPE:
                continue
            match = _WORK_ITEM_ID_IN_URL.search(str(relation.get("url") or ""))
            if match and int(match.group(1)) not in related_ids:
                related_ids.append(int(match.group(1)))
        if not related_ids:
            return []
        return await self.fetch_records(project, related_ids, RELATED_FIELDS)
