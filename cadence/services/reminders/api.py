"""
Cadence - Reminder admin HTTP API.

Endpoints:
- POST /detection/run: Run a detection pass now
- GET /outbox: List outbox entries (optionally by status)
- GET /outbox/stats: Entry counts per status
- GET /outbox/{entry_id}: One outbox entry
- POST /outbox/{entry_id}/retry: Manual retry of a failed entry
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from cadence.common.logging import setup_logging
from .engine import ReminderEngine
from .models import OutboxEntry, OutboxStatus

logger = setup_logging("reminders-api")


class DetectionReportResponse(BaseModel):
    """Summary of a detection pass."""
    started_at: str = Field(..., description="Pass reference time (ISO 8601, UTC)")
    candidates: int = Field(..., description="Candidates with an open window")
    claimed: int = Field(..., description="Candidates this pass claimed")
    already_claimed: int = Field(..., description="Candidates claimed by an earlier pass")
    suppressed: int = Field(..., description="Candidates dropped by user preferences")
    errors: int = Field(..., description="Candidates or sources skipped because of errors")
    recovered: int = Field(0, description="Claimed candidates re-enqueued after a lost outbox write")
    enqueued: List[str] = Field(default_factory=list, description="New outbox entry ids")


class OutboxEntryResponse(BaseModel):
    """One outbox entry."""
    id: str
    composite_key: str
    recipient_id: str
    kind: str
    title: str
    rendered_message: str
    status: OutboxStatus
    attempts: int
    manual_retries: int = 0
    created_at: str
    last_attempt_at: Optional[str] = None
    next_attempt_at: Optional[str] = None
    sent_at: Optional[str] = None
    last_error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class OutboxListResponse(BaseModel):
    entries: List[OutboxEntryResponse]
    count: int


class OutboxStatsResponse(BaseModel):
    pending: int = 0
    sent: int = 0
    failed: int = 0


class RetryResponse(BaseModel):
    """Result of a manual retry."""
    entry_id: str
    retried: bool
    status: OutboxStatus


def _entry_response(entry: OutboxEntry) -> OutboxEntryResponse:
    return OutboxEntryResponse(**entry.to_dict())


def register_routes(
    app: FastAPI,
    engine: ReminderEngine,
    on_detection: Optional[Callable[[Any], Awaitable[None]]] = None,
):
    """Attach the reminder admin routes to ``app``."""

    @app.post("/detection/run", response_model=DetectionReportResponse)
    async def run_detection():
        report = await engine.run_detection_pass()
        if on_detection is not None:
            await on_detection(report)
        return DetectionReportResponse(**report.to_dict())

    @app.get("/outbox", response_model=OutboxListResponse)
    async def list_outbox(
        status: Optional[OutboxStatus] = Query(None, description="Filter by status"),
        limit: int = Query(50, ge=1, le=500, description="Maximum number of entries"),
    ):
        entries = await engine.list_outbox(status=status, limit=limit)
        return OutboxListResponse(entries=[_entry_response(e) for e in entries], count=len(entries))

    @app.get("/outbox/stats", response_model=OutboxStatsResponse)
    async def outbox_stats():
        return OutboxStatsResponse(**await engine.outbox_stats())

    @app.get("/outbox/{entry_id}", response_model=OutboxEntryResponse)
    async def get_outbox_entry(entry_id: str):
        entry = await engine.get_outbox_entry(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Outbox entry {entry_id} not found")
        return _entry_response(entry)

    @app.post("/outbox/{entry_id}/retry", response_model=RetryResponse)
    async def retry_outbox_entry(entry_id: str):
        entry = await engine.get_outbox_entry(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Outbox entry {entry_id} not found")
        if not await engine.manual_retry(entry_id):
            current = await engine.get_outbox_entry(entry_id) or entry
            raise HTTPException(
                status_code=409,
                detail=f"Only failed entries can be retried (status: {current.status.value})",
            )
        logger.info(f"Manual retry requested for {entry_id}", extra={"outbox_id": entry_id})
        return RetryResponse(entry_id=entry_id, retried=True, status=OutboxStatus.PENDING)

    return app
