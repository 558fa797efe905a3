"""
Tests for baseline statistics, the epoch pipeline and PEM phase analysis.
"""
import math

import numpy as np
import pandas as pd
import pytest

from analytics.baseline import ZERO_VARIANCE_Z, BaselineStat, baseline_stats, z_score, z_series
from analytics.epochs import EpochPipeline, EpochProfile, aggregate_epochs, crash_starts, extract_epochs, zscore_epochs
from analytics.pem_phases import (
    DROP,
    SPIKE,
    PreCrashPhaseAnalyzer,
    analyze_crash_phase,
    analyze_recovery_phase,
    classify_trigger,
)
from config import AnalysisConfig
from engine import analyze_pem_cycle, discover_triggers
from observations import load_observations, numeric_metrics
from scoring import enhance


# ─── Baseline ─────────────────────────────────────────────────


class TestBaseline:

    def test_population_stats(self):
        df = load_observations([{"date": f"2024-01-0{i + 1}", "hrv": v} for i, v in enumerate([2, 4, 4, 4, 5, 5, 7, 9])])
        stat = baseline_stats(df, ["hrv"])["hrv"]
        assert stat.mean == pytest.approx(5.0)
        assert stat.std == pytest.approx(2.0)

    def test_gap_rows_ignored(self):
        df = load_observations([{"date": "2024-01-01", "hrv": 10}, {"date": "2024-01-05", "hrv": 20}])
        assert baseline_stats(df, ["hrv"])["hrv"].mean == 15

    def test_missing_metric_omitted(self):
        df = load_observations([{"date": "2024-01-01", "hrv": 10}])
        stats = baseline_stats(df, ["hrv", "step_count", "Nope"])
        assert set(stats) == {"hrv"}

    def test_zero_variance_fallback(self):
        stat = BaselineStat(mean=3.0, std=0.0)
        assert z_score(4.0, stat) == ZERO_VARIANCE_Z
        assert z_score(3.0, stat) == 0.0
        assert z_score(1.0, stat) == 0.0

    def test_missing_value_or_stat(self):
        assert z_score(None, BaselineStat(1, 1)) is None
        assert z_score(1.0, None) is None
        assert z_score(float("nan"), BaselineStat(1, 1)) is None

    def test_z_series_keeps_nan(self):
        z = z_series(pd.Series([1.0, np.nan, 5.0]), BaselineStat(3.0, 0.0))
        assert z.iloc[0] == 0.0
        assert math.isnan(z.iloc[1])
        assert z.iloc[2] == ZERO_VARIANCE_Z


# ─── Epochs ───────────────────────────────────────────────────


class TestEpochs:

    @staticmethod
    def _frame(crash_idx, n=30, values=None):
        rows = []
        for i in range(n):
            rows.append({
                "date": (pd.Timestamp("2024-01-01") + pd.Timedelta(days=i)).date().isoformat(),
                "hrv": values[i] if values is not None else 40 + i % 3,
                "custom_metrics": {"crash": 1 if i in crash_idx else 0},
            })
        return load_observations(rows)

    def test_consecutive_crash_days_are_one_start(self):
        df = self._frame({5, 6, 7, 15, 20, 21})
        assert crash_starts(df) == [5, 15, 20]

    def test_unlogged_day_does_not_split_a_crash(self):
        rows = [{"date": f"2024-01-{i + 1:02d}", "hrv": 40,
                 "custom_metrics": {"crash": 1 if i in (10, 12, 16) else 0}}
                for i in range(20) if i != 11]
        df = load_observations(rows)
        assert not df.loc[11, "observed"]
        # Days 13-15 are logged without a crash, so 16 starts a new run
        assert crash_starts(df) == [10, 16]

    def test_no_crash(self):
        assert crash_starts(self._frame(set())) == []

    def test_window_out_of_range_is_nan(self):
        df = self._frame({2})
        ep = extract_epochs(df, [2], ["hrv"], pre=7, post=14)[0]
        assert list(ep.values.index) == list(range(-7, 15))
        assert ep.values.loc[-7:-3, "hrv"].isna().all()
        assert ep.values.loc[-2, "hrv"] == df.loc[0, "hrv"]
        assert ep.crash_date == "2024-01-03"

    def test_offsets_are_calendar_days(self):
        rows = [
            {"date": "2024-01-01", "hrv": 10},
            {"date": "2024-01-03", "hrv": 30, "custom_metrics": {"crash": 1}},
        ]
        df = load_observations(rows)
        ep = extract_epochs(df, crash_starts(df), ["hrv"], pre=2, post=0)[0]
        assert ep.values.loc[-2, "hrv"] == 10
        assert math.isnan(ep.values.loc[-1, "hrv"])

    def test_aggregate_mean_and_empty_offsets(self):
        values = [0.0] * 30
        values[8], values[18] = 10.0, 20.0          # day -2 of both crashes
        df = self._frame({10, 20}, values=values)
        baseline = {"hrv": BaselineStat(0.0, 10.0)}
        epochs = zscore_epochs(extract_epochs(df, [10, 20], ["hrv"], 7, 14), baseline)
        profile = aggregate_epochs(epochs, ["hrv"], 7, 14)
        assert profile.n_events == 2
        assert profile.mean.at[-2, "hrv"] == pytest.approx(1.5)
        assert profile.std.at[-2, "hrv"] == pytest.approx(0.5)
        # Offsets past the end only have the first crash
        assert profile.n.at[14, "hrv"] == 1

    def test_profile_to_dict_json_safe(self):
        df = self._frame({1})
        profile = EpochPipeline(AnalysisConfig()).run(df, [1], ["hrv"], baseline_stats(df, ["hrv"]))
        first = profile.to_dict()[0]
        assert first["day_offset"] == -7
        assert first["metrics"]["hrv"] == {"mean": None, "std": None, "n": 0}


# ─── Pre-crash triggers ───────────────────────────────────────


class TestPreCrashPhase:

    def test_classification_labels(self):
        assert classify_trigger(SPIKE, -1) == "Acute Spike"
        assert classify_trigger(DROP, -4) == "Delayed Drop"
        assert classify_trigger(SPIKE, -3, synergistic=True) == "Synergistic Spike"

    def test_step_spike_discovered(self, calm_history):
        result = discover_triggers(calm_history)
        steps = [t for t in result.discovered_triggers if t.metric == "step_count"]
        assert len(steps) == 1
        trig = steps[0]
        assert trig.type == SPIKE
        assert trig.lead_days_start == -2
        assert trig.classification == "Delayed Spike"
        assert trig.magnitude > 1.5
        assert trig.pct_change > 0

    def test_at_most_five_sorted(self, calm_history):
        found = discover_triggers(calm_history).discovered_triggers
        assert len(found) <= 5
        mags = [t.magnitude for t in found]
        assert mags == sorted(mags, reverse=True)

    def test_no_crash_no_triggers(self):
        rows = [{"date": f"2024-01-{i + 1:02d}", "step_count": 3000 + 100 * i} for i in range(20)]
        result = discover_triggers(rows)
        assert result.discovered_triggers == []
        assert result.profile is None
        assert "step_count" in result.baseline

    def test_synergy_needs_joint_above_members(self):
        # Two metrics each at z=1.2 before the crash: alone below 1.5, jointly 1.70
        offsets = list(range(-7, 15))
        mean = pd.DataFrame(0.0, index=offsets, columns=["A", "B", "C"])
        mean.loc[-3, ["A", "B"]] = 1.2
        # C alone beats any pair it is part of
        mean.loc[-3, "C"] = 5.0
        profile = EpochProfile(mean, mean * 0, mean * 0 + 2, 2)
        baseline = {m: BaselineStat(1.0, 1.0) for m in "ABC"}
        found = PreCrashPhaseAnalyzer().analyze(profile, baseline)
        names = {t.metric for t in found.discoveries}
        assert "A + B" in names
        assert "C" in names
        assert "A + C" not in names
        pair = next(t for t in found.discoveries if t.metric == "A + B")
        assert pair.magnitude == pytest.approx(2.4 / math.sqrt(2))
        assert pair.classification == "Synergistic Spike"

    def test_score_not_paired_with_its_own_trackers(self):
        offsets = list(range(-7, 15))
        cols = ["Work", "exertion_score", "Headache", "symptom_score", "composite_score", "Mood"]
        mean = pd.DataFrame(0.0, index=offsets, columns=cols)
        mean.loc[-2] = 1.2
        profile = EpochProfile(mean, mean * 0, mean * 0 + 2, 2)
        baseline = {m: BaselineStat(1.0, 1.0) for m in cols}
        found = PreCrashPhaseAnalyzer(AnalysisConfig(max_discoveries=20)).analyze(profile, baseline)
        names = {t.metric for t in found.discoveries}
        for pair in ("Work + exertion_score", "Headache + symptom_score",
                     "symptom_score + composite_score", "Work + composite_score"):
            assert pair not in names
        # Independent signals still pair up
        assert "Work + Headache" in names
        assert "exertion_score + Mood" in names


# ─── Crash + recovery phases ──────────────────────────────────


class TestPemCycle:

    def test_cycle_analysis(self, calm_history):
        cycle = analyze_pem_cycle(calm_history)
        assert cycle is not None
        assert cycle.n_crashes == 2
        assert cycle.crash.avg_logged_duration == 1
        assert cycle.crash.type == "Dip (Short Episode)"
        assert cycle.crash.avg_physiological_duration >= cycle.crash.avg_logged_duration
        assert cycle.recovery is not None
        assert cycle.recovery.hysteresis_gap >= 0
        assert set(cycle.to_dict()) == {"n_crashes", "pre_crash", "crash", "recovery"}

    def test_crash_peak_discovered(self, calm_history):
        df = enhance(calm_history)
        metrics = numeric_metrics(df)
        baseline = baseline_stats(df, metrics)
        profile = EpochPipeline().run(df, crash_starts(df), metrics, baseline)
        crash = analyze_crash_phase(df, profile.epochs, baseline)
        assert any(d["metric"] == "Fatigue" and d["type"] == SPIKE for d in crash.discoveries)
        recovery = analyze_recovery_phase(df, profile.epochs, baseline)
        # Fatigue is back to normal the day after the crash
        assert recovery.metric_averages["Fatigue"] == 0

    def test_recovery_without_epochs(self):
        df = enhance([{"date": "2024-01-01", "hrv": 1}])
        assert analyze_recovery_phase(df, [], {}) is None

    def test_no_crash_returns_none(self):
        rows = [{"date": f"2024-01-{i + 1:02d}", "hrv": 40} for i in range(12)]
        assert analyze_pem_cycle(rows) is None
