"""REST API endpoints for a roadmap's datasource.

All routes live under /api/v1/roadmaps/{roadmap_id}/datasource. Who may call
them is decided by the surrounding roadmap permission model; these handlers
only translate HTTP to DatasourceService calls. DatasourceError subclasses
are mapped to 400/502 responses by the application's exception handler.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from src.app.datasources.schemas import (
    DatasourceKind,
    DatasourceSummary,
    DebugPayload,
    ItemsResult,
    RelatedWorkItem,
    ValidationReport,
    WorkItemComment,
    WorkItemLookup,
)
from src.app.datasources.service import DatasourceService
from src.app.datasources.tabular import build_csv_from_items

router = APIRouter(prefix="/api/v1/roadmaps/{roadmap_id}/datasource", tags=["datasources"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class SaveDatasourceRequest(BaseModel):
    """Request to replace a roadmap's datasource configuration.

    `credential` omitted keeps the stored token; `clear_credential` removes it.
    """

    kind: DatasourceKind = DatasourceKind.TABULAR
    config: dict[str, Any] = Field(default_factory=dict)
    credential: str | None = None
    clear_credential: bool = False
    tabular_text: str | None = None


class ValidateDatasourceRequest(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)
    credential: str | None = None


class ListProjectsRequest(BaseModel):
    endpoint_url: str = ""
    credential: str | None = None


class ProjectsResponse(BaseModel):
    projects: list[str]


# ── Dependency Injection Helper ──────────────────────────────────────────────


def _get_datasource_service(request: Request) -> DatasourceService:
    """Retrieve DatasourceService from app.state, 503 if not available."""
    service = getattr(request.app.state, "datasource_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Datasource service not initialized",
        )
    return service


# ── Configuration Endpoints ──────────────────────────────────────────────────


@router.get("", response_model=DatasourceSummary)
async def get_datasource(roadmap_id: str, request: Request) -> DatasourceSummary:
    """Current datasource configuration and last sync status."""
    service = _get_datasource_service(request)
    return await service.get_summary(roadmap_id)


@router.put("", response_model=DatasourceSummary)
async def save_datasource(
    roadmap_id: str,
    body: SaveDatasourceRequest,
    request: Request,
) -> DatasourceSummary:
    """Replace the datasource configuration. A changed config drops the cache."""
    service = _get_datasource_service(request)
    credential = "" if body.clear_credential else body.credential
    return await service.save_config(
        roadmap_id,
        body.kind,
        body.config,
        credential,
        tabular_text=body.tabular_text,
    )


@router.post("/validate", response_model=ValidationReport)
async def validate_datasource(
    roadmap_id: str,
    body: ValidateDatasourceRequest,
    request: Request,
) -> ValidationReport:
    """Dry-run a configuration against the tracker. Never writes a snapshot."""
    service = _get_datasource_service(request)
    return await service.validate_config(body.config, body.credential, roadmap_id=roadmap_id)


@router.post("/projects", response_model=ProjectsResponse)
async def list_projects(
    roadmap_id: str,
    body: ListProjectsRequest,
    request: Request,
) -> ProjectsResponse:
    """Projects visible to the token, falling back to the stored token."""
    service = _get_datasource_service(request)
    projects = await service.list_projects(body.endpoint_url, body.credential, roadmap_id=roadmap_id)
    return ProjectsResponse(projects=projects)


@router.get("/work-item", response_model=WorkItemLookup)
async def resolve_work_item(
    roadmap_id: str,
    request: Request,
    url: str = Query(..., description="Work item link copied from the tracker UI"),
) -> WorkItemLookup:
    """Derive organization, project and scope from a pasted work item link."""
    service = _get_datasource_service(request)
    return await service.resolve_from_record_url(url, None, roadmap_id=roadmap_id)


# ── Item Endpoints ───────────────────────────────────────────────────────────


@router.get("/items", response_model=ItemsResult)
async def get_items(
    roadmap_id: str,
    request: Request,
    refresh: bool = Query(False, description="Bypass the cache and sync now"),
    format: str = Query("json", pattern="^(json|csv)$"),
) -> Any:
    """Roadmap items from cache or a live sync; `format=csv` downloads them."""
    service = _get_datasource_service(request)
    result = await service.get_items(roadmap_id, force_refresh=refresh)
    if format == "csv":
        return Response(
            content=build_csv_from_items(result.items),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="roadmap-{roadmap_id}.csv"'},
        )
    return result


@router.get("/items/{item_id}/comments", response_model=list[WorkItemComment])
async def get_item_comments(
    roadmap_id: str,
    item_id: str,
    request: Request,
) -> list[WorkItemComment]:
    service = _get_datasource_service(request)
    return await service.get_comments(roadmap_id, item_id)


@router.get("/items/{item_id}/related", response_model=list[RelatedWorkItem])
async def get_related_items(
    roadmap_id: str,
    item_id: str,
    request: Request,
) -> list[RelatedWorkItem]:
    service = _get_datasource_service(request)
    return await service.get_related_items(roadmap_id, item_id)


@router.get("/debug", response_model=DebugPayload)
async def debug_datasource(
    roadmap_id: str,
    request: Request,
    sample: int = Query(5, ge=1, le=50),
) -> DebugPayload:
    """Raw query, field list and tracker responses for troubleshooting mappings."""
    service = _get_datasource_service(request)
    return await service.debug_payload(roadmap_id, sample)
