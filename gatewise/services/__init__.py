"""
Services package - Business logic layer
"""
from gatewise.services.threshold_service import threshold_service
from gatewise.services.clustering_service import clustering_service
from gatewise.services.gate_materializer import gate_materializer
from gatewise.services.orphan_service import orphan_service
from gatewise.services.binding_learner import binding_learner
from gatewise.services.gate_merge_service import gate_merge_service
from gatewise.services.duplicate_detector import duplicate_detector
from gatewise.services.validation_service import validation_service
from gatewise.services.ingestion_service import ingestion_service
from gatewise.services.gate_service import gate_service
from gatewise.services.report_service import report_service
from gatewise.services.cycle_service import cycle_service

__all__ = [
    "threshold_service",
    "clustering_service",
    "gate_materializer",
    "orphan_service",
    "binding_learner",
    "gate_merge_service",
    "duplicate_detector",
    "validation_service",
    "ingestion_service",
    "gate_service",
    "report_service",
    "cycle_service",
]
