from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from ...services.telemetry_logger import TelemetryLogger
from ..deps import get_telemetry

router = APIRouter(prefix="/logs", tags=["logs"])


class AiLogResponse(BaseModel):
    count: int
    entries: List[Dict[str, Any]]


@router.get("/ai/recent", response_model=AiLogResponse)
async def recent_ai_logs(
    lines: int = Query(100, ge=1, le=1000),
    filter: Optional[str] = Query(None, max_length=64),
    telemetry: TelemetryLogger = Depends(get_telemetry),
) -> AiLogResponse:
    entries = await run_in_threadpool(telemetry.recent, lines, filter)
    return AiLogResponse(count=len(entries), entries=entries)
