"""
Admin API routes.

Operational endpoints over the consistency layer: index and link
reconciliation, repair, workflow triggers and read-only entity lookups.

Invariants:
    - Repair endpoints default to a dry run
    - Workflow endpoints return WorkflowResult.to_dict() unchanged
"""

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..ledger import Ledger
from ..types import EntityRef, EntityType
from ..workflows import WorkflowResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["kvledger admin"])


# --- Request/Response Models ---


class ResetRequest(BaseModel):
    """Request to reset all entity data."""

    mode: Literal["clear", "defaults", "backfill"] = Field(
        "defaults", description="clear, defaults (re-seed Player One and sites) or backfill"
    )


class CollectRequest(BaseModel):
    """Request to collect entities into the monthly archive."""

    ids: list[str] = Field(..., min_length=1, description="Entity ids to collect")
    collected_at: datetime | None = Field(None, description="Collection moment, default now")


class IndexInfo(BaseModel):
    """A registered secondary index and its buckets."""

    entity_type: str
    name: str
    buckets: list[str]


class HealthResponse(BaseModel):
    status: str
    store_backend: str
    store_connected: bool
    transaction_phase: str


# --- Dependencies ---


def get_ledger(request: Request) -> Ledger:
    """Get the ledger from app state."""
    return request.app.state.ledger


def resolve_dry_run(request: Request, dry_run: bool | None = None) -> bool:
    """Explicit dry_run query param, else the configured default."""
    if dry_run is None:
        return request.app.state.settings.default_dry_run
    return dry_run


def parse_entity_type(entity_type: str) -> EntityType:
    try:
        return EntityType.parse(entity_type)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown entity type: {entity_type}")


def workflow_response(result: WorkflowResult) -> JSONResponse:
    return JSONResponse(status_code=200 if result.success else 500, content=result.to_dict())


# --- Health ---


@router.get("/health", response_model=HealthResponse)
async def health(ledger: Ledger = Depends(get_ledger)):
    return HealthResponse(
        status="healthy" if ledger.store.is_connected else "degraded",
        store_backend=ledger.config.store_backend.value,
        store_connected=ledger.store.is_connected,
        transaction_phase=ledger.tx.phase.value,
    )


# --- Indexes ---


@router.get("/admin/indexes", response_model=list[IndexInfo])
async def list_indexes(ledger: Ledger = Depends(get_ledger)):
    """List registered indexes with their current buckets."""
    indexes = []
    for policy in ledger.indexes.policies:
        buckets = await ledger.indexes.buckets(policy.entity_type, policy.name)
        indexes.append(
            IndexInfo(entity_type=policy.entity_type.value, name=policy.name, buckets=buckets)
        )
    return indexes


@router.get("/admin/indexes/{entity_type}/{index_name}/{bucket}")
async def index_members(
    entity_type: str,
    index_name: str,
    bucket: str,
    ledger: Ledger = Depends(get_ledger),
):
    members = await ledger.indexes.members(entity_type, index_name, bucket)
    return {"bucket": bucket, "members": sorted(members)}


@router.post("/admin/indexes/{entity_type}/{index_name}/reconcile")
async def reconcile_index(entity_type: str, index_name: str, ledger: Ledger = Depends(get_ledger)):
    """Report missing and phantom entries of one index without writing."""
    report = await ledger.indexes.reconcile(entity_type, index_name)
    return {**report.to_dict(), "is_clean": report.is_clean}


@router.post("/admin/indexes/{entity_type}/{index_name}/repair")
async def repair_index(
    entity_type: str,
    index_name: str,
    ledger: Ledger = Depends(get_ledger),
    dry_run: bool = Depends(resolve_dry_run),
):
    counts = await ledger.indexes.repair(entity_type, index_name, apply=not dry_run)
    return counts.to_dict()


# --- Links ---


@router.post("/admin/links/reconcile")
async def reconcile_links(ledger: Ledger = Depends(get_ledger)):
    report = await ledger.links.reconcile()
    return {**report.to_dict(), "is_clean": report.is_clean}


@router.post("/admin/links/repair")
async def repair_links(
    ledger: Ledger = Depends(get_ledger),
    dry_run: bool = Depends(resolve_dry_run),
):
    counts = await ledger.links.repair(apply=not dry_run)
    return counts.to_dict()


# --- Workflows ---


@router.post("/admin/reset")
async def reset_data(body: ResetRequest, ledger: Ledger = Depends(get_ledger)):
    """
    Reset all entity data inside one transaction.

    Any failure rolls every step back; the response says whether the
    rollback itself succeeded.
    """
    result = await ledger.reset.execute(body.mode)
    return workflow_response(result)


@router.post("/admin/clear-logs")
async def clear_logs(ledger: Ledger = Depends(get_ledger)):
    result = await ledger.clear_logs.execute()
    return workflow_response(result)


@router.post("/admin/archive/{entity_type}/collect")
async def collect(entity_type: str, body: CollectRequest, ledger: Ledger = Depends(get_ledger)):
    result = await ledger.archive.collect_many(
        parse_entity_type(entity_type), body.ids, body.collected_at
    )
    return workflow_response(result)


@router.get("/admin/archive/months")
async def archive_months(ledger: Ledger = Depends(get_ledger)):
    return {"months": await ledger.archive.archive_months()}


@router.get("/admin/archive/{entity_type}/{month}")
async def archived_entities(entity_type: str, month: str, ledger: Ledger = Depends(get_ledger)):
    snapshots = await ledger.archive.archived(parse_entity_type(entity_type), month)
    return {"month": month, "items": snapshots, "total": len(snapshots)}


# --- Entities (read-only) ---


@router.get("/entities/{entity_type}/{entity_id}")
async def get_entity(entity_type: str, entity_id: str, ledger: Ledger = Depends(get_ledger)):
    entity = await ledger.repo.get(parse_entity_type(entity_type), entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"{entity_type} {entity_id} not found")
    return entity


@router.get("/entities/{entity_type}/{entity_id}/links")
async def get_entity_links(
    entity_type: str, entity_id: str, ledger: Ledger = Depends(get_ledger)
) -> dict[str, Any]:
    ref = EntityRef(parse_entity_type(entity_type), entity_id)
    links = await ledger.links.get_links_for(ref)
    return {"entity": ref.to_dict(), "links": [link.to_dict() for link in links]}
