"""
Sessions API - session lifecycle, thresholds, reports and cycle scheduling
"""
import logging
from datetime import datetime
from typing import Optional, Literal
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatewise.dependencies import get_db, http_error, verify_api_key
from gatewise.exceptions import GatewiseError
from gatewise.services.cycle_service import cycle_service
from gatewise.services.gate_service import gate_service
from gatewise.services.report_service import report_service
from gatewise.services.threshold_service import threshold_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sessions", tags=["Sessions"])


class SessionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


class ThresholdUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their current value"""
    min_samples_for_gate: Optional[int] = None
    cluster_epsilon_meters: Optional[float] = None
    max_spatial_variance_m2: Optional[float] = None
    min_quality_weight: Optional[float] = None
    soft_threshold: Optional[float] = None
    hard_threshold: Optional[float] = None
    min_effective_samples: Optional[int] = None
    confidence_prior_strength: Optional[float] = None
    violation_demotion_count: Optional[int] = None
    violation_rate_threshold: Optional[float] = None
    max_demotions_before_unbind: Optional[int] = None
    duplicate_distance_meters: Optional[float] = None
    merge_review_threshold: Optional[float] = None
    merge_auto_apply_threshold: Optional[float] = None
    auto_merge_enabled: Optional[bool] = None
    orphan_max_distance_meters: Optional[float] = None
    gate_match_tolerance_meters: Optional[float] = None
    out_of_range_factor: Optional[float] = None
    discovery_first_run_scans: Optional[int] = None
    discovery_refresh_scans: Optional[int] = None
    discovery_window_hours: Optional[float] = None
    updated_by: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "soft_threshold": 0.65,
                "hard_threshold": 0.85,
                "updated_by": "ops@venue"
            }
        }


def _session_dict(venue_session) -> dict:
    return {
        "id": venue_session.id,
        "name": venue_session.name,
        "is_active": venue_session.is_active,
        "starts_at": venue_session.starts_at,
        "ends_at": venue_session.ends_at,
    }


@router.post("")
async def create_session(
    request: SessionCreateRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Register a venue session"""
    venue_session = gate_service.create_session(db, request.name, request.starts_at, request.ends_at)
    return _session_dict(venue_session)


@router.get("/{session_id}")
async def get_session(session_id: int, db: Session = Depends(get_db)):
    try:
        return _session_dict(gate_service.get_session(db, session_id))
    except GatewiseError as e:
        raise http_error(e)


@router.post("/{session_id}/deactivate")
async def deactivate_session(
    session_id: int,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Deactivate a session. In-flight cycles stop after their current stage
    and scheduled sweeps skip the session; validation keeps answering.
    """
    try:
        return _session_dict(gate_service.deactivate_session(db, session_id))
    except GatewiseError as e:
        raise http_error(e)


# ============================================================
# THRESHOLDS
# ============================================================

@router.get("/{session_id}/thresholds")
async def get_thresholds(session_id: int, db: Session = Depends(get_db)):
    try:
        gate_service.get_session(db, session_id)
    except GatewiseError as e:
        raise http_error(e)
    return threshold_service.get_thresholds(db, session_id).model_dump()


@router.put("/{session_id}/thresholds")
async def update_thresholds(
    session_id: int,
    request: ThresholdUpdateRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Update the session's thresholds. The result must satisfy
    0 < soft_threshold < hard_threshold <= 1, otherwise 422 and the stored
    configuration is left untouched.
    """
    updates = request.model_dump(exclude_none=True)
    updated_by = updates.pop("updated_by", None)
    try:
        values = threshold_service.update_thresholds(db, session_id, updates, updated_by)
    except GatewiseError as e:
        raise http_error(e)
    return values.model_dump()


# ============================================================
# REPORTS & CYCLES
# ============================================================

@router.get("/{session_id}/discovery-report")
async def discovery_report(session_id: int, db: Session = Depends(get_db)):
    """GPS data quality, gate and binding counts, recommended next steps"""
    try:
        return report_service.discovery_report(db, session_id)
    except GatewiseError as e:
        raise http_error(e)


@router.post("/{session_id}/cycles/{cycle}")
async def trigger_cycle(
    session_id: int,
    cycle: Literal["discovery", "enforcement", "duplicates"],
    inline: bool = Query(False, description="Run in this request instead of the worker"),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Run a discovery, enforcement or duplicate-detection cycle for one session.

    By default the cycle is enqueued on the worker; `inline=true` runs it
    here and returns its result.
    """
    try:
        gate_service.get_session(db, session_id)
        if inline:
            runner = {
                "discovery": cycle_service.run_discovery_cycle,
                "enforcement": cycle_service.run_enforcement_cycle,
                "duplicates": cycle_service.run_duplicate_detection,
            }[cycle]
            return runner(db, session_id)
    except GatewiseError as e:
        raise http_error(e)

    from gatewise.worker.tasks import CYCLE_TASKS
    task = CYCLE_TASKS[cycle].delay(session_id)
    return {"session_id": session_id, "cycle": cycle, "status": "queued", "task_id": task.id}
