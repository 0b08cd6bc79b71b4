"""
Check-in API - scan ingestion and gate/category validation

Provides:
- POST /checkins: Store a scan, resolve its gate, trigger discovery at milestones
- POST /validate: allow / flag_mismatch / deny_out_of_range for a scan at a gate
"""
import logging
from datetime import datetime
from typing import Optional, List, Literal
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatewise.dependencies import get_db, http_error
from gatewise.exceptions import GatewiseError
from gatewise.services.ingestion_service import ingestion_service
from gatewise.services.validation_service import validation_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Check-ins"])


# ============================================================
# REQUEST/RESPONSE MODELS
# ============================================================

class CheckinRequest(BaseModel):
    """A scan reported by a gate scanner"""
    session_id: int = Field(..., description="Venue session the scan belongs to")
    wristband_id: str = Field(..., min_length=1, description="Scanned wristband or ticket id")
    category: str = Field(..., min_length=1, description="Ticket category, e.g. GENERAL or VIP")
    scanned_at: Optional[datetime] = Field(None, description="Scan time (UTC); defaults to now")
    latitude: Optional[float] = Field(None, description="Scanner GPS latitude")
    longitude: Optional[float] = Field(None, description="Scanner GPS longitude")
    accuracy_m: Optional[float] = Field(None, description="Reported GPS accuracy in meters")
    gate_id: Optional[int] = Field(None, description="Gate the scanner believes it is at")
    outcome: Literal["success", "denied", "error"] = "success"
    external_id: Optional[str] = Field(None, description="Client idempotency key")

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": 1,
                "wristband_id": "WB-000123",
                "category": "GENERAL",
                "latitude": 51.5033,
                "longitude": -0.1195,
                "accuracy_m": 8.0
            }
        }


class CheckinResponse(BaseModel):
    checkin_id: int
    gate_id: Optional[int] = None
    quality_weight: float
    duplicate: bool
    discovery_triggered: bool


class ValidateRequest(BaseModel):
    """Candidate gate and category for a scan in progress"""
    session_id: int
    gate_id: int
    category: str = Field(..., min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy_m: Optional[float] = None

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": 1,
                "gate_id": 4,
                "category": "VIP",
                "latitude": 51.5034,
                "longitude": -0.1196,
                "accuracy_m": 12.0
            }
        }


class ValidateResponse(BaseModel):
    decision: Literal["allow", "flag_mismatch", "deny_out_of_range"]
    reason: str
    gate_id: int
    category: str
    binding_status: Optional[str] = None
    confidence: float
    distance_m: Optional[float] = None
    enforced_categories: List[str] = []


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("/checkins", response_model=CheckinResponse)
async def ingest_checkin(
    request: CheckinRequest,
    db: Session = Depends(get_db)
):
    """
    Store a scan.

    The scan is stamped with a GPS quality weight and the nearest gate when
    one is in range. When the session reaches a discovery milestone a
    discovery cycle is enqueued.
    """
    try:
        result = ingestion_service.ingest(
            db,
            session_id=request.session_id,
            wristband_id=request.wristband_id,
            category=request.category,
            scanned_at=request.scanned_at,
            latitude=request.latitude,
            longitude=request.longitude,
            accuracy_m=request.accuracy_m,
            gate_id=request.gate_id,
            outcome=request.outcome,
            external_id=request.external_id
        )
    except GatewiseError as e:
        raise http_error(e)

    if result["discovery_triggered"]:
        from gatewise.worker.tasks import run_discovery_cycle
        try:
            run_discovery_cycle.delay(request.session_id)
        except Exception as e:
            # The scheduled sweep picks the session up later
            logger.error(f"Could not enqueue discovery for session {request.session_id}: {e}")

    return CheckinResponse(**result)


@router.post("/validate", response_model=ValidateResponse)
async def validate_checkin(
    request: ValidateRequest,
    db: Session = Depends(get_db)
):
    """
    Decide whether a scan of this category belongs at this gate.

    Read-only; never waits on background discovery or learning.
    """
    try:
        result = validation_service.validate(
            db,
            session_id=request.session_id,
            gate_id=request.gate_id,
            category=request.category,
            latitude=request.latitude,
            longitude=request.longitude,
            accuracy_m=request.accuracy_m
        )
        return ValidateResponse(**result)
    except Exception as e:
        logger.error(f"Validation error for gate {request.gate_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
