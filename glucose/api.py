"""FastAPI router for the operator-facing sync status.

Endpoints:
- GET /api/v1/status  (engine statistics, 503 when no engine is attached)
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from shared.config import settings
from shared.exceptions import EngineNotRunningError
from shared.middleware import request_id_var

router = APIRouter(prefix="/api/v1")


class SyncStatus(BaseModel):
    total_synced: int
    total_skipped: int
    errors: int
    last_sync: datetime | None
    last_error: str | None
    synced_timestamps_count: int
    serial_number: str | None
    sync_interval_seconds: float
    max_readings_per_sync: int


def _meta() -> dict[str, Any]:
    return {
        "request_id": request_id_var.get(""),
        "timestamp": datetime.now(UTC).isoformat(),
        "api_version": settings.api_version,
    }


@router.get("/status")
async def get_status(request: Request) -> dict[str, Any]:
    syncer = getattr(request.app.state, "syncer", None)
    if syncer is None:
        raise EngineNotRunningError()

    status = SyncStatus(
        **syncer.get_stats(),
        sync_interval_seconds=syncer.sync_interval_seconds,
        max_readings_per_sync=syncer.max_readings,
    )
    return {"data": status.model_dump(mode="json"), "meta": _meta()}
