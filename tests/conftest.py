"""Shared fixtures for datasource tests.

Provides:
- InMemoryDatasourceStore: dict-backed DatasourceStore double
- FakeTracker: httpx.MockTransport handler that plays the tracker REST API
- FrozenClock: settable clock for staleness tests
- A DatasourceService wired to all three, plus a configured tracker roadmap
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from tenacity import wait_none

from src.app.core.security import SecretStore
from src.app.datasources.client import TrackerClient
from src.app.datasources.schemas import DatasourceKind, DatasourceRecord, Snapshot
from src.app.datasources.service import DatasourceService
from src.app.datasources.store import DatasourceStore, dump_items

ORG_URL = "https://dev.azure.com/contoso"
PROJECT = "Roadmap"
TOKEN = "pat-123"


# ── In-Memory Store ──────────────────────────────────────────────────────────


class InMemoryDatasourceStore(DatasourceStore):
    """DatasourceStore that keeps rows in a dict. Counts snapshot writes."""

    def __init__(self) -> None:
        self.records: dict[str, DatasourceRecord] = {}
        self.snapshot_writes = 0
        self.failures: list[tuple[str, str]] = []

    def _put(self, roadmap_id: str, **update: Any) -> DatasourceRecord:
        current = self.records.get(roadmap_id) or DatasourceRecord(roadmap_id=roadmap_id)
        record = current.model_copy(update=update)
        self.records[roadmap_id] = record
        return record

    async def get(self, roadmap_id: str) -> DatasourceRecord | None:
        return self.records.get(roadmap_id)

    async def ensure(self, roadmap_id: str) -> DatasourceRecord:
        if roadmap_id not in self.records:
            self.records[roadmap_id] = DatasourceRecord(roadmap_id=roadmap_id)
        return self.records[roadmap_id]

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
        current = await self.ensure(roadmap_id)
        update: dict[str, Any] = {
            "kind": kind,
            "config_json": config_json,
            "config_version": current.config_version + 1,
            "last_sync_error": None,
        }
        if not keep_credential:
            update["encrypted_credential"] = encrypted_credential
        if clear_snapshot:
            update.update(snapshot_json=None, snapshot_captured_at=None, snapshot_truncated=False)
        return self._put(roadmap_id, **update)

    async def write_snapshot(
        self,
        roadmap_id: str,
        *,
        expected_version: int,
        snapshot: Snapshot,
        duration_ms: int,
    ) -> bool:
        current = self.records.get(roadmap_id)
        if current is None or current.config_version != expected_version:
            return False
        self.snapshot_writes += 1
        self._put(
            roadmap_id,
            snapshot_json=dump_items(snapshot.items),
            snapshot_captured_at=snapshot.captured_at,
            snapshot_truncated=snapshot.truncated,
            last_sync_at=snapshot.captured_at,
            last_sync_duration_ms=duration_ms,
            last_sync_item_count=len(snapshot.items),
            last_sync_error=None,
        )
        return True

    async def record_sync_failure(self, roadmap_id: str, *, at: datetime, error: str) -> None:
        self.failures.append((roadmap_id, error))
        if roadmap_id in self.records:
            self._put(roadmap_id, last_sync_at=at, last_sync_error=error)

    async def set_tabular_text(self, roadmap_id: str, text: str | None) -> DatasourceRecord:
        await self.ensure(roadmap_id)
        return self._put(roadmap_id, tabular_text=text)


# ── Fake Tracker ─────────────────────────────────────────────────────────────


class FakeTracker:
    """Plays the tracker REST API behind an httpx.MockTransport.

    Work item records live in `records` ({id: fields}); the WIQL endpoint
    returns `ids` (every added record by default). Batch responses come back
    in reverse order so callers must restore query order themselves.

    `fail(operation, *statuses)` queues error responses for the next calls
    to an operation; `break_operation(operation, status)` fails it for good.
    `gate`, when set, holds every batch call until the event fires.
    """

    def __init__(self) -> None:
        self.ids: list[int] = []
        self.records: dict[int, dict[str, Any]] = {}
        self.relations: dict[int, list[dict[str, Any]]] = {}
        self.comments: dict[int, list[dict[str, Any]]] = {}
        self.saved_queries: dict[str, str] = {}
        self.projects: list[str] = [PROJECT]
        self.field_names: set[str] = set()
        self.requests: list[tuple[str, httpx.Request]] = []
        self.clients: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self._queued: dict[str, list[int]] = {}
        self._broken: dict[str, int] = {}

    def add(self, item_id: int, fields: dict[str, Any]) -> None:
        self.records[item_id] = fields
        self.ids.append(item_id)

    def fail(self, operation: str, *statuses: int) -> None:
        self._queued.setdefault(operation, []).extend(statuses)

    def break_operation(self, operation: str, status: int = 500) -> None:
        self._broken[operation] = status

    def calls(self, operation: str) -> list[httpx.Request]:
        return [request for name, request in self.requests if name == operation]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @staticmethod
    def _operation(request: httpx.Request) -> str:
        path = request.url.path.lower()
        if path.endswith("/_apis/wit/wiql"):
            return "wiql"
        if path.endswith("/_apis/wit/workitemsbatch"):
            return "batch"
        if "/_apis/wit/queries/" in path:
            return "saved_query"
        if path.endswith("/_apis/projects"):
            return "projects"
        if path.endswith("/_apis/wit/fields"):
            return "fields"
        if path.endswith("/comments"):
            return "comments"
        if "/_apis/wit/workitems/" in path:
            return "workitem"
        return "unknown"

    async def handler(self, request: httpx.Request) -> httpx.Response:
        operation = self._operation(request)
        self.requests.append((operation, request))

        queued = self._queued.get(operation)
        if queued:
            return httpx.Response(queued.pop(0), text=f"{operation} unavailable")
        if operation in self._broken:
            return httpx.Response(self._broken[operation], text=f"{operation} unavailable")

        if operation == "wiql":
            return httpx.Response(200, json={"workItems": [{"id": i} for i in self.ids]})
        if operation == "batch":
            if self.gate is not None:
                await self.gate.wait()
            body = json.loads(request.content)
            wanted = set(body["fields"])
            value = [
                {
                    "id": item_id,
                    "fields": {k: v for k, v in self.records[item_id].items() if k in wanted},
                }
                for item_id in reversed(body["ids"])
                if item_id in self.records
            ]
            return httpx.Response(200, json={"count": len(value), "value": value})
        if operation == "saved_query":
            query_id = request.url.path.rsplit("/", 1)[-1]
            if query_id not in self.saved_queries:
                return httpx.Response(404, text="query not found")
            return httpx.Response(200, json={"id": query_id, "wiql": self.saved_queries[query_id]})
        if operation == "projects":
            return httpx.Response(200, json={"value": [{"name": name} for name in self.projects]})
        if operation == "fields":
            return httpx.Response(
                200, json={"value": [{"referenceName": name} for name in sorted(self.field_names)]}
            )
        item_id = int(request.url.path.split("/")[-2 if operation == "comments" else -1])
        if operation == "comments":
            return httpx.Response(200, json={"comments": self.comments.get(item_id, [])})
        if operation == "workitem":
            if item_id not in self.records:
                return httpx.Response(404, text="work item not found")
            return httpx.Response(
                200,
                json={
                    "id": item_id,
                    "fields": self.records[item_id],
                    "relations": self.relations.get(item_id, []),
                },
            )
        return httpx.Response(404)


# ── Clock ────────────────────────────────────────────────────────────────────


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryDatasourceStore:
    return InMemoryDatasourceStore()


@pytest.fixture
def secrets() -> SecretStore:
    return SecretStore("test-passphrase")


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def client_factory(tracker):
    """TrackerClient factory bound to the fake tracker, one attempt, no waits."""

    def factory(base_url: str, token: str) -> TrackerClient:
        tracker.clients.append((base_url, token))
        return TrackerClient(
            base_url,
            token,
            max_attempts=1,
            batch_size=2,
            transport=tracker.transport,
            retry_wait=wait_none(),
        )

    return factory


@pytest.fixture
def service(store, secrets, client_factory, clock) -> DatasourceService:
    return DatasourceService(store, secrets, client_factory=client_factory, clock=clock)


@pytest.fixture
def tracker_config() -> dict[str, Any]:
    return {
        "endpoint_url": "https://contoso.visualstudio.com/",
        "project": PROJECT,
        "query_mode": "simple",
        "query_template": "epics_features_active",
        "refresh_minutes": 15,
    }


@pytest_asyncio.fixture
async def tracker_roadmap(service, tracker_config) -> str:
    """Roadmap "roadmap-1" configured for the fake tracker with a stored token."""
    await service.save_config(
        "roadmap-1", DatasourceKind.EXTERNAL_TRACKER, tracker_config, TOKEN
    )
    return "roadmap-1"
