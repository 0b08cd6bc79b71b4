"""
Discovery Report Service - data quality snapshot for a session

Summarises how usable the scan telemetry is for gate discovery and what an
operator should do next.
"""
import logging
from typing import Dict, Any, List

import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session

from gatewise.db.models import CategoryBinding, CheckinEvent, Gate, MergeSuggestion
from gatewise.services.gate_service import gate_service
from gatewise.services.quality_service import accuracy_label
from gatewise.services.threshold_service import threshold_service

logger = logging.getLogger(__name__)


class ReportService:
    """Builds per-session discovery reports"""

    def discovery_report(self, db: Session, session_id: int) -> Dict[str, Any]:
        gate_service.get_session(db, session_id)
        thresholds = threshold_service.get_thresholds(db, session_id)

        rows = db.query(
            CheckinEvent.quality_weight,
            CheckinEvent.accuracy_m,
            CheckinEvent.gate_id,
            CheckinEvent.outcome,
            CheckinEvent.category
        ).filter(CheckinEvent.session_id == session_id).all()
        df = pd.DataFrame(rows, columns=["quality_weight", "accuracy_m", "gate_id", "outcome", "category"])

        total = len(df)
        with_gps = int((df["quality_weight"] > 0).sum()) if total else 0
        accepted = int((df["quality_weight"] >= thresholds.min_quality_weight).sum()) if total else 0
        orphaned = int(((df["outcome"] == "success") & df["gate_id"].isna()).sum()) if total else 0
        avg_accuracy = None
        if with_gps:
            avg_accuracy = round(float(df.loc[df["quality_weight"] > 0, "accuracy_m"].mean()), 2)

        gates_by_status = dict(
            db.query(Gate.status, func.count(Gate.id)).filter(
                Gate.session_id == session_id
            ).group_by(Gate.status).all()
        )
        bindings_by_status = dict(
            db.query(CategoryBinding.status, func.count(CategoryBinding.id)).filter(
                CategoryBinding.session_id == session_id
            ).group_by(CategoryBinding.status).all()
        )
        pending_merges = db.query(func.count(MergeSuggestion.id)).filter(
            MergeSuggestion.session_id == session_id,
            MergeSuggestion.status == "pending"
        ).scalar() or 0

        gps_pct = round(100.0 * with_gps / total, 1) if total else 0.0
        accepted_pct = round(100.0 * accepted / total, 1) if total else 0.0

        report = {
            "session_id": session_id,
            "total_checkins": total,
            "checkins_with_gps": with_gps,
            "gps_coverage_pct": gps_pct,
            "accepted_checkins": accepted,
            "accepted_pct": accepted_pct,
            "avg_accuracy_m": avg_accuracy,
            "gps_quality": accuracy_label(avg_accuracy),
            "orphaned_checkins": orphaned,
            "categories": int(df["category"].nunique()) if total else 0,
            "gates": gates_by_status,
            "bindings": bindings_by_status,
            "pending_merge_suggestions": int(pending_merges),
        }
        report["recommended_strategy"] = self._strategy(report, thresholds.discovery_first_run_scans)
        report["next_steps"] = self._next_steps(report)
        return report

    def _strategy(self, report: Dict[str, Any], first_run_scans: int) -> str:
        if report["accepted_checkins"] < first_run_scans:
            return "collect_more_data"
        if report["gps_coverage_pct"] >= 80 and report["gps_quality"] in ("excellent", "good"):
            return "gps_clustering"
        if report["gps_coverage_pct"] >= 50:
            return "gps_clustering_with_review"
        return "manual_gate_setup"

    def _next_steps(self, report: Dict[str, Any]) -> List[str]:
        steps = []
        if report["recommended_strategy"] == "collect_more_data":
            steps.append("Keep scanning; discovery starts once enough accurate GPS scans arrive")
        if report["gps_coverage_pct"] < 50:
            steps.append("Enable location capture on scanners or create gates manually")
        if report["orphaned_checkins"]:
            steps.append(f"{report['orphaned_checkins']} check-ins have no gate yet")
        if report["pending_merge_suggestions"]:
            steps.append(f"Review {report['pending_merge_suggestions']} pending gate merge suggestions")
        if not steps:
            steps.append("No action needed")
        return steps


report_service = ReportService()
