"""
Gates API - gate listings and operator overrides

Provides:
- GET  /sessions/{session_id}/gates: Gates with health, status and bindings
- POST /sessions/{session_id}/gates: Create a gate manually
- PATCH /gates/{gate_id}: Rename or change status
- POST /gates/{gate_id}/approve: Approve an auto-discovered gate
- POST /gates/merge: Merge two gates directly
- POST /gates/{gate_id}/bindings/{category}/unbind|reset: Binding overrides
"""
import logging
from typing import Optional, Literal
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatewise.dependencies import get_db, http_error, verify_api_key
from gatewise.exceptions import GatewiseError
from gatewise.services.binding_learner import binding_learner
from gatewise.services.gate_merge_service import gate_merge_service
from gatewise.services.gate_service import gate_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Gates"])


class GateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    created_by: Optional[str] = None


class GateUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    status: Optional[Literal["active", "inactive", "maintenance"]] = None


class GateApproveRequest(BaseModel):
    approved_by: str = Field(..., min_length=1)


class GateMergeRequest(BaseModel):
    session_id: int
    target_gate_id: int
    source_gate_id: int
    merged_by: str = Field(..., min_length=1)
    reason: Optional[str] = None


class BindingOverrideRequest(BaseModel):
    actor: Optional[str] = None


def _binding_dict(binding) -> dict:
    return {
        "id": binding.id,
        "gate_id": binding.gate_id,
        "category": binding.category,
        "status": binding.status,
        "confidence": round(binding.confidence, 4),
        "sample_count": binding.sample_count,
        "violation_count": binding.violation_count,
        "demotion_count": binding.demotion_count,
    }


@router.get("/sessions/{session_id}/gates")
async def list_gates(
    session_id: int,
    include_inactive: bool = False,
    db: Session = Depends(get_db)
):
    try:
        gates = gate_service.list_gates(db, session_id, include_inactive=include_inactive)
    except GatewiseError as e:
        raise http_error(e)
    return {"session_id": session_id, "gates": gates}


@router.post("/sessions/{session_id}/gates")
async def create_gate(
    session_id: int,
    request: GateCreateRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        gate = gate_service.create_manual_gate(
            db, session_id, request.name, request.latitude, request.longitude, request.created_by
        )
    except GatewiseError as e:
        raise http_error(e)
    return gate_service.gate_to_dict(gate)


@router.patch("/gates/{gate_id}")
async def update_gate(
    gate_id: int,
    request: GateUpdateRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        gate = gate_service.update_gate(db, gate_id, name=request.name, status=request.status)
    except GatewiseError as e:
        raise http_error(e)
    return gate_service.gate_to_dict(gate)


@router.post("/gates/{gate_id}/approve")
async def approve_gate(
    gate_id: int,
    request: GateApproveRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        gate = gate_service.approve_gate(db, gate_id, request.approved_by)
    except GatewiseError as e:
        raise http_error(e)
    return gate_service.gate_to_dict(gate)


@router.post("/gates/merge")
async def merge_gates(
    request: GateMergeRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Merge source into target in one transaction. 409 when either gate is
    no longer active.
    """
    try:
        return gate_merge_service.merge_gates(
            db,
            request.session_id,
            request.target_gate_id,
            request.source_gate_id,
            request.merged_by,
            request.reason
        )
    except GatewiseError as e:
        raise http_error(e)


@router.post("/gates/{gate_id}/bindings/{category}/unbind")
async def unbind_category(
    gate_id: int,
    category: str,
    request: BindingOverrideRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Disable a binding; it stays out of enforcement until reset"""
    try:
        binding = binding_learner.unbind(db, gate_id, category, actor=request.actor)
    except GatewiseError as e:
        raise http_error(e)
    return _binding_dict(binding)


@router.post("/gates/{gate_id}/bindings/{category}/reset")
async def reset_binding(
    gate_id: int,
    category: str,
    request: BindingOverrideRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Move an unbound binding back to probation"""
    try:
        binding = binding_learner.reset(db, gate_id, category, actor=request.actor)
    except GatewiseError as e:
        raise http_error(e)
    return _binding_dict(binding)
