"""
Merge Review API - pending duplicate-gate suggestions
"""
import logging
from typing import Optional, Literal
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gatewise.db.models import MergeSuggestion
from gatewise.dependencies import get_db, http_error, verify_api_key
from gatewise.exceptions import GatewiseError
from gatewise.services.gate_merge_service import gate_merge_service
from gatewise.services.gate_service import gate_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Merge Review"])


class ReviewRequest(BaseModel):
    reviewed_by: str = Field(..., min_length=1)
    reason: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "reviewed_by": "ops@venue",
                "reason": "Same turnstile bank, two scanners"
            }
        }


def _suggestion_dict(suggestion: MergeSuggestion) -> dict:
    return {
        "id": suggestion.id,
        "session_id": suggestion.session_id,
        "target_gate_id": suggestion.target_gate_id,
        "source_gate_id": suggestion.source_gate_id,
        "distance_m": suggestion.distance_m,
        "traffic_similarity": suggestion.traffic_similarity,
        "category_similarity": suggestion.category_similarity,
        "confidence": suggestion.confidence,
        "status": suggestion.status,
        "reasoning": suggestion.reasoning,
        "reviewed_by": suggestion.reviewed_by,
        "reviewed_at": suggestion.reviewed_at,
        "review_reason": suggestion.review_reason,
        "created_at": suggestion.created_at,
    }


@router.get("/sessions/{session_id}/merge-suggestions")
async def list_merge_suggestions(
    session_id: int,
    status: Optional[Literal["pending", "approved", "rejected", "auto_applied"]] = "pending",
    db: Session = Depends(get_db)
):
    try:
        gate_service.get_session(db, session_id)
    except GatewiseError as e:
        raise http_error(e)

    query = db.query(MergeSuggestion).filter(MergeSuggestion.session_id == session_id)
    if status:
        query = query.filter(MergeSuggestion.status == status)
    suggestions = query.order_by(MergeSuggestion.confidence.desc(), MergeSuggestion.id).all()
    return {"session_id": session_id, "suggestions": [_suggestion_dict(s) for s in suggestions]}


@router.post("/merge-suggestions/{suggestion_id}/approve")
async def approve_merge(
    suggestion_id: int,
    request: ReviewRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Approve and apply a merge. 409 if the suggestion was already reviewed or
    either gate is no longer active.
    """
    try:
        return gate_merge_service.approve(db, suggestion_id, request.reviewed_by, request.reason)
    except GatewiseError as e:
        raise http_error(e)


@router.post("/merge-suggestions/{suggestion_id}/reject")
async def reject_merge(
    suggestion_id: int,
    request: ReviewRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Reject a suggestion; the pair will not be suggested again"""
    try:
        suggestion = gate_merge_service.reject(db, suggestion_id, request.reviewed_by, request.reason)
    except GatewiseError as e:
        raise http_error(e)
    return _suggestion_dict(suggestion)
