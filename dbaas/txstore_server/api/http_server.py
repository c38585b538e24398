"""
Admin HTTP API for TxStore.

Read-only endpoints for operators:
- GET /v1/health: liveness and open transaction count
- GET /v1/stats?project_id=...: head version, live entities, open transactions
- GET /v1/entities/{kind}?project_id=...: latest committed entities of a kind

Writes and transactions are only available over gRPC.

Usage:
    app = create_http_app(servicer)
    uvicorn.run(app, port=8081)
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..errors import InvalidRequestError
from .grpc_server import DatastoreServicer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Admin"])


class HealthResponse(BaseModel):
    """Server health."""
    healthy: bool
    version: str
    uptime_seconds: float
    open_transactions: int


class StatsResponse(BaseModel):
    """Per-project store statistics."""
    project_id: str
    head_version: int
    live_entities: int
    version_rows: int
    open_transactions: int


class EntitiesResponse(BaseModel):
    """Entities in wire form."""
    kind: str
    namespace: str
    count: int
    entities: list[dict[str, Any]] = Field(default_factory=list)


def _servicer(request: Request) -> DatastoreServicer:
    return request.app.state.servicer


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> dict[str, Any]:
    return await _servicer(request).health_check()


@router.get("/stats", response_model=StatsResponse)
async def stats(request: Request, project_id: str = Query(...)) -> dict[str, Any]:
    try:
        return await _servicer(request).stats(project_id)
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/entities/{kind}", response_model=EntitiesResponse)
async def list_entities(
    request: Request,
    kind: str,
    project_id: str = Query(...),
    namespace: str = Query(""),
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    try:
        entities = await _servicer(request).list_entities(project_id, kind, namespace, limit)
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"kind": kind, "namespace": namespace, "count": len(entities), "entities": entities}


def create_http_app(servicer: DatastoreServicer) -> FastAPI:
    """Create the admin FastAPI app.

    Args:
        servicer: DatastoreServicer whose store and registry are reported

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="TxStore Admin",
        description="Read-only operational endpoints for a TxStore server.",
        version="1.0.0",
    )
    app.state.servicer = servicer
    app.include_router(router)
    return app
