"""
Threshold Service - per-session adaptive thresholds

Process-wide defaults come from settings; a session may override any of
them through an `adaptive_thresholds` row. Updates are validated as a whole
(0 < soft < hard <= 1 and positive distances) before anything is written.
"""
import logging
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy.orm import Session

from gatewise.config import settings
from gatewise.db.models import AdaptiveThresholdConfig, VenueSession
from gatewise.exceptions import NotFoundError, ThresholdValidationError

logger = logging.getLogger(__name__)


class ThresholdValues(BaseModel):
    """Complete, validated set of tunables for one session"""
    min_samples_for_gate: int = Field(default_factory=lambda: settings.DEFAULT_MIN_SAMPLES_FOR_GATE, ge=1)
    cluster_epsilon_meters: float = Field(default_factory=lambda: settings.DEFAULT_CLUSTER_EPSILON_METERS, gt=0)
    max_spatial_variance_m2: float = Field(default_factory=lambda: settings.DEFAULT_MAX_SPATIAL_VARIANCE_M2, gt=0)
    min_quality_weight: float = Field(default_factory=lambda: settings.DEFAULT_MIN_QUALITY_WEIGHT, ge=0, le=1)
    soft_threshold: float = Field(default_factory=lambda: settings.DEFAULT_SOFT_THRESHOLD)
    hard_threshold: float = Field(default_factory=lambda: settings.DEFAULT_HARD_THRESHOLD)
    min_effective_samples: int = Field(default_factory=lambda: settings.DEFAULT_MIN_EFFECTIVE_SAMPLES, ge=1)
    confidence_prior_strength: float = Field(default_factory=lambda: settings.DEFAULT_CONFIDENCE_PRIOR_STRENGTH, ge=0)
    violation_demotion_count: int = Field(default_factory=lambda: settings.DEFAULT_VIOLATION_DEMOTION_COUNT, ge=1)
    violation_rate_threshold: float = Field(default_factory=lambda: settings.DEFAULT_VIOLATION_RATE_THRESHOLD, gt=0, le=1)
    max_demotions_before_unbind: int = Field(default_factory=lambda: settings.DEFAULT_MAX_DEMOTIONS_BEFORE_UNBIND, ge=1)
    duplicate_distance_meters: float = Field(default_factory=lambda: settings.DEFAULT_DUPLICATE_DISTANCE_METERS, gt=0)
    merge_review_threshold: float = Field(default_factory=lambda: settings.DEFAULT_MERGE_REVIEW_THRESHOLD, gt=0, le=1)
    merge_auto_apply_threshold: float = Field(default_factory=lambda: settings.DEFAULT_MERGE_AUTO_APPLY_THRESHOLD, gt=0, le=1)
    auto_merge_enabled: bool = Field(default_factory=lambda: settings.DEFAULT_AUTO_MERGE_ENABLED)
    orphan_max_distance_meters: float = Field(default_factory=lambda: settings.DEFAULT_ORPHAN_MAX_DISTANCE_METERS, gt=0)
    gate_match_tolerance_meters: float = Field(default_factory=lambda: settings.DEFAULT_GATE_MATCH_TOLERANCE_METERS, gt=0)
    out_of_range_factor: float = Field(default_factory=lambda: settings.DEFAULT_OUT_OF_RANGE_FACTOR, gt=0)
    discovery_first_run_scans: int = Field(default_factory=lambda: settings.DEFAULT_DISCOVERY_FIRST_RUN_SCANS, ge=1)
    discovery_refresh_scans: int = Field(default_factory=lambda: settings.DEFAULT_DISCOVERY_REFRESH_SCANS, ge=1)
    discovery_window_hours: float = Field(default_factory=lambda: settings.DEFAULT_DISCOVERY_WINDOW_HOURS, gt=0)

    @model_validator(mode="after")
    def check_threshold_order(self):
        if not (0 < self.soft_threshold < self.hard_threshold <= 1):
            raise ValueError("thresholds must satisfy 0 < soft_threshold < hard_threshold <= 1")
        if self.merge_review_threshold > self.merge_auto_apply_threshold:
            raise ValueError("merge_review_threshold must not exceed merge_auto_apply_threshold")
        return self


THRESHOLD_FIELDS = list(ThresholdValues.model_fields.keys())


class ThresholdService:
    """Reads and updates the effective thresholds of a session"""

    def get_thresholds(self, db: Session, session_id: int) -> ThresholdValues:
        row = db.query(AdaptiveThresholdConfig).filter(
            AdaptiveThresholdConfig.session_id == session_id
        ).first()
        if not row:
            return ThresholdValues()
        return ThresholdValues(**{name: getattr(row, name) for name in THRESHOLD_FIELDS})

    def update_thresholds(
        self,
        db: Session,
        session_id: int,
        updates: Dict[str, Any],
        updated_by: Optional[str] = None
    ) -> ThresholdValues:
        """
        Apply a partial update. The merged result must validate as a whole;
        otherwise ThresholdValidationError is raised and nothing is written.
        """
        venue_session = db.query(VenueSession).filter(VenueSession.id == session_id).first()
        if not venue_session:
            raise NotFoundError(f"Session {session_id} not found")

        unknown = set(updates) - set(THRESHOLD_FIELDS)
        if unknown:
            raise ThresholdValidationError(f"Unknown threshold fields: {sorted(unknown)}")

        current = self.get_thresholds(db, session_id).model_dump()
        current.update({k: v for k, v in updates.items() if v is not None})
        try:
            validated = ThresholdValues(**current)
        except ValidationError as e:
            raise ThresholdValidationError(str(e)) from e

        row = db.query(AdaptiveThresholdConfig).filter(
            AdaptiveThresholdConfig.session_id == session_id
        ).first()
        if not row:
            row = AdaptiveThresholdConfig(session_id=session_id)
            db.add(row)
        for name, value in validated.model_dump().items():
            setattr(row, name, value)
        row.updated_by = updated_by

        try:
            db.commit()
        except Exception as e:
            logger.error(f"Error saving thresholds for session {session_id}: {e}")
            db.rollback()
            raise

        logger.info(f"Thresholds updated for session {session_id} by {updated_by or 'system'}")
        return validated


threshold_service = ThresholdService()
