"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter

from backupagent.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/ping", response_model=HealthResponse)
def ping() -> HealthResponse:
    """Check server health."""
    return HealthResponse(status="ok")
