"""
Tests for safe-zone threshold detection and recovery velocity.
"""
from datetime import date, timedelta

import pytest

from config import AnalysisConfig
from engine import detect_thresholds, recovery_velocity
from insights import RecoveryVelocityEstimator, ThresholdDetector


def _day(i):
    return (date(2024, 1, 1) + timedelta(days=i)).isoformat()


class TestThresholdDetector:

    @staticmethod
    def _step_rows():
        """Flat symptoms below 3000 steps, elevated above 4000."""
        rows = []
        for i in range(40):
            low = i % 2 == 0
            steps = 1000 + 50 * i if low else 4000 + 100 * i
            rows.append({"date": _day(i), "step_count": steps,
                         "custom_metrics": {"Fatigue": 1 if low else 5}})
        return rows

    def test_safe_zone_between_levels(self):
        insights = detect_thresholds(self._step_rows())
        steps = [t for t in insights if t.metric == "step_count"]
        assert len(steps) == 1
        assert 2500 < steps[0].safe_zone_limit < 5000
        assert steps[0].impact_metric == "symptom_score"
        assert "Staying below" in steps[0].description

    def test_bucket_means(self):
        t = detect_thresholds(self._step_rows())[0]
        assert len(t.bucket_means) == 4
        assert t.bucket_means[0] == pytest.approx(1.0)
        assert t.bucket_means[-1] == pytest.approx(5.0)

    def test_flat_response_no_threshold(self):
        rows = [{"date": _day(i), "step_count": 1000 * i, "custom_metrics": {"Fatigue": 3}}
                for i in range(20)]
        assert detect_thresholds(rows) == []

    def test_too_few_pairs(self):
        rows = self._step_rows()[:8]
        assert detect_thresholds(rows) == []

    def test_custom_impact_and_trigger(self):
        rows = [{"date": _day(i), "custom_metrics": {"Work": i, "Pain": 1 if i < 10 else 4}}
                for i in range(20)]
        insights = ThresholdDetector().detect(rows, impact_metric="Pain", trigger_metrics=["Work"])
        assert [t.metric for t in insights] == ["Work"]
        assert insights[0].safe_zone_limit == 10

    def test_missing_trigger_metric_ignored(self):
        assert ThresholdDetector().detect(self._step_rows(), trigger_metrics=["Nope"]) == []


class TestRecoveryVelocity:

    @staticmethod
    def _rows(recovery_lag=2):
        """Step spikes every 10 days; HRV dips and comes back after ``recovery_lag`` days."""
        rows = []
        for i in range(60):
            spike = i % 10 == 5
            since = (i - 5) % 10
            hrv = 40 if since == 0 or since >= recovery_lag else 30
            rows.append({"date": _day(i), "hrv": hrv,
                         "step_count": 15000 if spike else 3000 + (i % 3) * 100})
        return rows

    def test_recovery_days(self):
        results = RecoveryVelocityEstimator().estimate(self._rows(recovery_lag=3), outcome_metrics=["hrv"])
        steps = [r for r in results if r.metric == "step_count" and r.outcome_metric == "hrv"]
        assert len(steps) == 1
        assert steps[0].recovery_days == pytest.approx(3.0)
        assert steps[0].sample_count == 6
        assert steps[0].confidence == 1.0

    def test_unrecovered_counts_as_cap(self):
        results = RecoveryVelocityEstimator().estimate(self._rows(recovery_lag=9), outcome_metrics=["hrv"])
        steps = next(r for r in results if r.metric == "step_count")
        # The last spike (day 55) sees only 4 following days; all spikes unrecovered
        assert steps.recovery_days == pytest.approx(AnalysisConfig().recovery_cap_days)

    def test_needs_two_spikes(self):
        rows = self._rows()[:10]
        assert RecoveryVelocityEstimator().estimate(rows, outcome_metrics=["hrv"]) == []

    def test_confidence_scales_with_spikes(self):
        cfg = AnalysisConfig(recovery_full_confidence=12)
        results = RecoveryVelocityEstimator(cfg).estimate(self._rows(), outcome_metrics=["hrv"])
        assert results[0].confidence == pytest.approx(6 / 12)

    def test_engine_defaults(self):
        results = recovery_velocity(self._rows())
        outcomes = {r.outcome_metric for r in results}
        assert "hrv" in outcomes
        assert all(r.recovery_days >= 1 for r in results)

    def test_sorted_slowest_first(self):
        results = recovery_velocity(self._rows())
        days = [r.recovery_days for r in results]
        assert days == sorted(days, reverse=True)
