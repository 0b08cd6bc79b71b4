"""
SQLAlchemy ORM Models for the Gatewise service
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from gatewise.db.database import Base


# ============================================================
# SESSIONS & CHECK-INS
# ============================================================

class VenueSession(Base):
    """A ticketed event session whose gates are discovered from scans"""
    __tablename__ = "venue_sessions"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    starts_at = Column(DateTime)
    ends_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())

    gates = relationship("Gate", back_populates="session")
    thresholds = relationship("AdaptiveThresholdConfig", back_populates="session", uselist=False)
    checkpoint = relationship("SessionCheckpoint", back_populates="session", uselist=False)


class CheckinEvent(Base):
    """One scan attempt; only the gate reference changes after insert"""
    __tablename__ = "checkin_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), nullable=False)
    wristband_id = Column(String(100), nullable=False)
    category = Column(String(100), nullable=False)
    scanned_at = Column(DateTime, nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    accuracy_m = Column(Float)
    quality_weight = Column(Float, default=0.0, nullable=False)
    gate_id = Column(Integer, ForeignKey("gates.id"))
    outcome = Column(String(20), default="success", nullable=False)  # success, denied, error
    external_id = Column(String(100))
    # Gate resolution: ingestion, orphan_backfill, merge
    gate_resolution = Column(String(30))
    assignment_distance_m = Column(Float)
    created_at = Column(DateTime, server_default=func.now())

    gate = relationship("Gate", back_populates="checkins")

    __table_args__ = (
        UniqueConstraint('session_id', 'external_id', name='uq_checkin_session_external'),
        Index('idx_checkin_session_gate', 'session_id', 'gate_id'),
        Index('idx_checkin_session_scanned', 'session_id', 'scanned_at'),
        Index('idx_checkin_session_category', 'session_id', 'category'),
    )


# ============================================================
# GATES
# ============================================================

class Gate(Base):
    """Physical entry point inferred from scan clusters or created manually"""
    __tablename__ = "gates"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), nullable=False)
    name = Column(String(200), nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    # Centroid rounded to 4 decimals (~11 m); unique per session
    centroid_key = Column(String(50), nullable=False)
    derivation_method = Column(String(30), default="gps_clustering", nullable=False)  # gps_clustering, manual
    health_score = Column(Integer, default=50, nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, inactive, maintenance
    approval_status = Column(String(20), default="pending", nullable=False)  # pending, approved
    spatial_variance = Column(Float, default=0.0, nullable=False)  # m^2
    sample_count = Column(Integer, default=0, nullable=False)
    auto_created = Column(Boolean, default=True, nullable=False)
    first_seen_at = Column(DateTime)
    last_seen_at = Column(DateTime)
    merged_into_id = Column(Integer, ForeignKey("gates.id"))
    approved_by = Column(String(100))
    approved_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    session = relationship("VenueSession", back_populates="gates")
    checkins = relationship("CheckinEvent", back_populates="gate")
    bindings = relationship("CategoryBinding", back_populates="gate")

    __table_args__ = (
        UniqueConstraint('session_id', 'centroid_key', name='uq_gate_session_centroid'),
        Index('idx_gate_session_status', 'session_id', 'status'),
    )


# ============================================================
# CATEGORY BINDINGS
# ============================================================

class CategoryBinding(Base):
    """Learned association between a ticket category and a gate"""
    __tablename__ = "category_bindings"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), nullable=False)
    gate_id = Column(Integer, ForeignKey("gates.id"), nullable=False)
    category = Column(String(100), nullable=False)
    sample_count = Column(Integer, default=0, nullable=False)
    confidence = Column(Float, default=0.0, nullable=False)
    status = Column(String(20), default="probation", nullable=False)  # probation, enforced, unbound
    violation_count = Column(Integer, default=0, nullable=False)
    last_violation_at = Column(DateTime)
    # Counters since the last status change
    window_samples = Column(Integer, default=0, nullable=False)
    window_violations = Column(Integer, default=0, nullable=False)
    demotion_count = Column(Integer, default=0, nullable=False)
    status_changed_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    gate = relationship("Gate", back_populates="bindings")

    __table_args__ = (
        UniqueConstraint('gate_id', 'category', name='uq_binding_gate_category'),
        Index('idx_binding_session_category', 'session_id', 'category'),
    )


class BindingTransition(Base):
    """Audit log of binding status changes"""
    __tablename__ = "binding_transitions"

    id = Column(Integer, primary_key=True, index=True)
    binding_id = Column(Integer, ForeignKey("category_bindings.id"), nullable=False)
    gate_id = Column(Integer, ForeignKey("gates.id"), nullable=False)
    category = Column(String(100), nullable=False)
    from_status = Column(String(20), nullable=False)
    to_status = Column(String(20), nullable=False)
    reason = Column(String(50), nullable=False)  # promotion, demotion, operator_unbind, operator_reset, merge
    confidence = Column(Float)
    actor = Column(String(100))
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index('idx_transition_binding', 'binding_id'),
    )


class BindingViolation(Base):
    """A check-in that contradicted an enforced binding"""
    __tablename__ = "binding_violations"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), nullable=False)
    checkin_id = Column(Integer, ForeignKey("checkin_events.id"), nullable=False)
    gate_id = Column(Integer, ForeignKey("gates.id"), nullable=False)
    category = Column(String(100), nullable=False)
    binding_id = Column(Integer, ForeignKey("category_bindings.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        Index('idx_violation_gate', 'gate_id'),
    )


class LearnedCheckin(Base):
    """Ledger of check-ins already counted by the binding learner"""
    __tablename__ = "learned_checkins"

    checkin_id = Column(Integer, ForeignKey("checkin_events.id"), primary_key=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), nullable=False)
    gate_id = Column(Integer, ForeignKey("gates.id"), nullable=False)
    category = Column(String(100), nullable=False)
    created_at = Column(DateTime, server_default=func.now())


# ============================================================
# MERGE SUGGESTIONS
# ============================================================

class MergeSuggestion(Base):
    """Proposed merge of two gates that look like the same physical entry"""
    __tablename__ = "gate_merge_suggestions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), nullable=False)
    # "<low gate id>:<high gate id>"
    pair_key = Column(String(50), nullable=False)
    target_gate_id = Column(Integer, ForeignKey("gates.id"), nullable=False)
    source_gate_id = Column(Integer, ForeignKey("gates.id"), nullable=False)
    distance_m = Column(Float, nullable=False)
    traffic_similarity = Column(Float, nullable=False)
    category_similarity = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, approved, rejected, auto_applied
    reasoning = Column(Text)
    reviewed_by = Column(String(100))
    reviewed_at = Column(DateTime)
    review_reason = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('session_id', 'pair_key', name='uq_merge_session_pair'),
        Index('idx_merge_session_status', 'session_id', 'status'),
    )


# ============================================================
# CONFIGURATION & CHECKPOINTS
# ============================================================

class AdaptiveThresholdConfig(Base):
    """Per-session overrides of the discovery and enforcement tunables"""
    __tablename__ = "adaptive_thresholds"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("venue_sessions.id"), unique=True, nullable=False)
    min_samples_for_gate = Column(Integer, nullable=False)
    cluster_epsilon_meters = Column(Float, nullable=False)
    max_spatial_variance_m2 = Column(Float, nullable=False)
    min_quality_weight = Column(Float, nullable=False)
    soft_threshold = Column(Float, nullable=False)
    hard_threshold = Column(Float, nullable=False)
    min_effective_samples = Column(Integer, nullable=False)
    confidence_prior_strength = Column(Float, nullable=False)
    violation_demotion_count = Column(Integer, nullable=False)
    violation_rate_threshold = Column(Float, nullable=False)
    max_demotions_before_unbind = Column(Integer, nullable=False)
    duplicate_distance_meters = Column(Float, nullable=False)
    merge_review_threshold = Column(Float, nullable=False)
    merge_auto_apply_threshold = Column(Float, nullable=False)
    auto_merge_enabled = Column(Boolean, nullable=False)
    orphan_max_distance_meters = Column(Float, nullable=False)
    gate_match_tolerance_meters = Column(Float, nullable=False)
    out_of_range_factor = Column(Float, nullable=False)
    discovery_first_run_scans = Column(Integer, nullable=False)
    discovery_refresh_scans = Column(Integer, nullable=False)
    discovery_window_hours = Column(Float, nullable=False)
    updated_by = Column(String(100))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    session = relationship("VenueSession", back_populates="thresholds")


class SessionCheckpoint(Base):
    """Background-cycle bookkeeping for one session"""
    __tablename__ = "session_checkpoints"

    session_id = Column(Integer, ForeignKey("venue_sessions.id"), primary_key=True)
    accepted_scan_count = Column(Integer, default=0, nullable=False)
    last_discovery_scan_count = Column(Integer, default=0, nullable=False)
    last_learned_checkin_id = Column(Integer, default=0, nullable=False)
    lease_owner = Column(String(64))
    lease_expires_at = Column(DateTime)
    last_discovery_at = Column(DateTime)
    last_enforcement_at = Column(DateTime)
    last_duplicate_scan_at = Column(DateTime)
    last_error = Column(Text)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    session = relationship("VenueSession", back_populates="checkpoint")
