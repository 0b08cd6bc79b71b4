"""
Tests for per-session threshold configuration.
"""
import pytest

from gatewise.config import settings
from gatewise.db.models import AdaptiveThresholdConfig
from gatewise.exceptions import NotFoundError, ThresholdValidationError
from gatewise.services.threshold_service import ThresholdService, ThresholdValues


class TestThresholdValues:

    def test_defaults_come_from_settings(self):
        values = ThresholdValues()
        assert values.soft_threshold == settings.DEFAULT_SOFT_THRESHOLD
        assert values.hard_threshold == settings.DEFAULT_HARD_THRESHOLD
        assert values.min_effective_samples == settings.DEFAULT_MIN_EFFECTIVE_SAMPLES
        assert values.auto_merge_enabled is False

    @pytest.mark.parametrize("soft,hard", [(0.8, 0.7), (0.7, 0.7), (0.0, 0.5), (0.5, 1.2)])
    def test_threshold_order_enforced(self, soft, hard):
        with pytest.raises(ValueError):
            ThresholdValues(soft_threshold=soft, hard_threshold=hard)

    def test_review_threshold_cannot_exceed_auto_apply(self):
        with pytest.raises(ValueError):
            ThresholdValues(merge_review_threshold=0.9, merge_auto_apply_threshold=0.8)


class TestThresholdService:

    def setup_method(self):
        self.service = ThresholdService()

    def test_session_without_overrides_uses_defaults(self, db, venue):
        assert self.service.get_thresholds(db, venue.id) == ThresholdValues()

    def test_partial_update_persists(self, db, venue):
        updated = self.service.update_thresholds(
            db, venue.id, {"soft_threshold": 0.6, "hard_threshold": 0.9}, updated_by="ops"
        )

        assert updated.soft_threshold == 0.6
        assert updated.hard_threshold == 0.9
        assert updated.cluster_epsilon_meters == settings.DEFAULT_CLUSTER_EPSILON_METERS

        stored = self.service.get_thresholds(db, venue.id)
        assert stored == updated
        assert db.query(AdaptiveThresholdConfig).one().updated_by == "ops"

    def test_invalid_update_leaves_config_untouched(self, db, venue):
        self.service.update_thresholds(db, venue.id, {"soft_threshold": 0.6})

        with pytest.raises(ThresholdValidationError):
            self.service.update_thresholds(db, venue.id, {"soft_threshold": 0.95})

        assert self.service.get_thresholds(db, venue.id).soft_threshold == 0.6

    def test_unknown_field_rejected(self, db, venue):
        with pytest.raises(ThresholdValidationError):
            self.service.update_thresholds(db, venue.id, {"gps_magic": 3})

    def test_unknown_session(self, db):
        with pytest.raises(NotFoundError):
            self.service.update_thresholds(db, 12345, {"soft_threshold": 0.6})
