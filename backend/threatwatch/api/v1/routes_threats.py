# backend/threatwatch/api/v1/routes_threats.py

from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from threatwatch.schemas.threats import (
    AttackSequence,
    CollectionStatus,
    CollectRangeRequest,
    CollectRangeResponse,
    KillChainStage,
    PatternType,
    ThreatEvent,
    ThreatPattern,
)
from threatwatch.services.events.threat_repository import threat_repository
from threatwatch.services.scheduler.collection_scheduler import CollectionScheduler

router = APIRouter(
    prefix="/threats",
    tags=["threats"],
)


def _scheduler(request: Request) -> CollectionScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Threat collection scheduler is not running",
        )
    return scheduler


def _window(start: Optional[datetime], end: Optional[datetime], default_hours: int):
    end = end or datetime.utcnow()
    start = start or end - timedelta(hours=default_hours)
    if start >= end:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start must be before end",
        )
    return start, end


@router.post(
    "/collect",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a collection cycle now",
)
async def trigger_collection(request: Request) -> dict:
    """
    Wakes the collection loop. Returns immediately; several calls before the
    loop wakes up result in a single cycle.
    """
    _scheduler(request).trigger_collection()
    return {"status": "triggered"}


@router.get("/status", response_model=CollectionStatus)
async def collection_status(request: Request) -> CollectionStatus:
    return _scheduler(request).status


@router.post(
    "/collect-range",
    response_model=CollectRangeResponse,
    summary="Collect and store a specific time range",
)
async def collect_range(payload: CollectRangeRequest, request: Request) -> CollectRangeResponse:
    """
    Pulls [start, end) from the controller and stores it. Does not touch the
    scheduler's sync or backfill cursors.
    """
    collected, saved = await _scheduler(request).collect_range(
        payload.start, payload.end, payload.max_pages
    )
    return CollectRangeResponse(collected=collected, saved=saved)


@router.post(
    "/rebackfill",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Restart historical backfill",
)
async def rebackfill(request: Request) -> dict:
    _scheduler(request).request_rebackfill()
    return {"status": "rebackfill requested"}


@router.get("/events", response_model=List[ThreatEvent])
def list_events(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    source_ip: Optional[str] = None,
    dest_port: Optional[int] = None,
    stage: Optional[KillChainStage] = None,
    limit: int = Query(100, ge=1, le=5000),
) -> List[ThreatEvent]:
    """Stored threat events, newest first. Defaults to the last 24 hours."""
    start, end = _window(start, end, 24)
    return threat_repository.get_events(
        start, end, source_ip=source_ip, dest_port=dest_port, stage=stage, limit=limit
    )


@router.get("/patterns", response_model=List[ThreatPattern])
def list_patterns(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    pattern_type: Optional[PatternType] = None,
    limit: int = Query(50, ge=1, le=1000),
) -> List[ThreatPattern]:
    start, end = _window(start, end, 24)
    return threat_repository.get_patterns(start, end, pattern_type=pattern_type, limit=limit)


@router.get("/sequences", response_model=List[AttackSequence])
def list_sequences(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
) -> List[AttackSequence]:
    """Source IPs that progressed through two or more kill-chain stages."""
    start, end = _window(start, end, 6)
    return threat_repository.get_attack_sequences(start, end, limit=limit)
