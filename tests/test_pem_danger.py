"""
Tests for the live PEM danger state machine.

Covers: every needs_data reason, personal trigger matching, stale matches,
synergistic pairs, cumulative load, and the stable biometric snapshot.
"""
import math
from datetime import date, datetime, time

import pytest

from analytics.baseline import BaselineStat
from conftest import CRASH_DAYS, HISTORY_DAYS, crash_history, day
from engine import current_danger_status
from observations import load_observations
from pem_danger import (
    CUMULATIVE_LOAD,
    DANGER,
    NEEDS_DATA,
    NO_CRASHES,
    NO_HISTORY,
    NO_RECENT_DATA,
    STABLE,
    PEMDangerScorer,
    current_danger,
)


class TestNeedsData:

    def test_no_history(self):
        rows = crash_history()[:5]
        status = current_danger_status(rows, today=day(4))
        assert status.status == NEEDS_DATA
        assert status.insufficient_data_reason == NO_HISTORY
        assert status.level == 0

    def test_no_recent_data(self, calm_history):
        status = current_danger_status(calm_history, today=date(2024, 6, 1))
        assert status.status == NEEDS_DATA
        assert status.insufficient_data_reason == NO_RECENT_DATA

    def test_no_crashes(self):
        rows = [{"date": day(i).isoformat(), "step_count": 3000 + 10 * i,
                 "custom_metrics": {"Fatigue": 3, "Crash": 0}} for i in range(15)]
        status = current_danger_status(rows, today=day(14))
        assert status.status == NEEDS_DATA
        assert status.insufficient_data_reason == NO_CRASHES


class TestDanger:

    def test_replayed_spike_is_danger(self, spike_history, last_day):
        status = current_danger_status(spike_history, today=last_day)
        assert status.status == DANGER
        assert status.level == pytest.approx(100.0)
        assert 1 <= len(status.matched_triggers) <= 3
        steps = [m for m in status.matched_triggers if m.metric == "step_count"]
        assert steps, [m.metric for m in status.matched_triggers]
        assert steps[0].is_personal is True
        assert steps[0].type == "Delayed Spike"
        assert steps[0].lead_days_start == -2
        assert status.biometrics is None

    def test_matches_sorted_by_score(self, spike_history, last_day):
        status = current_danger_status(spike_history, today=last_day)
        scores = [m.score for m in status.matched_triggers]
        assert scores == sorted(scores, reverse=True)
        assert all(0 <= s <= 100 for s in scores)

    def test_stale_spike_not_matched(self):
        rows = crash_history(spike_today=False)
        # Spike 7 days ago: the crash it predicts would already have happened
        rows[HISTORY_DAYS - 8]["step_count"] = 12000
        status = current_danger_status(rows, today=day(HISTORY_DAYS - 1))
        assert status.status == STABLE

    def test_cumulative_load(self):
        rows = crash_history(spike_today=False)
        for r in rows[-8:]:
            r["step_count"] = 9000
        status = current_danger_status(rows, today=day(HISTORY_DAYS - 1))
        assert status.status == DANGER
        load = [m for m in status.matched_triggers if m.type == CUMULATIVE_LOAD]
        assert len(load) == 1
        assert load[0].metric == "step_count"
        assert load[0].is_personal is False
        assert 50 <= load[0].score < 100

    def test_replayed_pair_pattern_matches_as_synergy(self, last_day):
        # Caffeine and Mood rise together two days before each crash and again today
        rows = []
        for i in range(HISTORY_DAYS):
            high = i in (18, 38, HISTORY_DAYS - 1)
            rows.append({"date": day(i).isoformat(), "custom_metrics": {
                "Fatigue": 8 if i in CRASH_DAYS else 5,
                "Caffeine": 6 if high else 2,
                "Mood": 6 if high else 2,
                "Crash": 1 if i in CRASH_DAYS else 0,
            }})
        status = current_danger_status(rows, today=last_day)
        assert status.status == DANGER
        pairs = [m for m in status.matched_triggers if " + " in m.metric]
        assert len(pairs) == 1
        pair = pairs[0]
        assert set(pair.metric.split(" + ")) == {"Caffeine", "Mood"}
        assert pair.type == "Synergistic Spike"
        assert pair.lead_days_start == -2
        assert pair.is_personal is True
        assert pair.score == pytest.approx(100.0)
        # Joint z of two equal members is sqrt(2) times either one
        solo = next(m for m in status.matched_triggers if m.metric == "Caffeine")
        assert pair.current_z == pytest.approx(solo.current_z * math.sqrt(2))

    def test_cumulative_load_from_exertion_trackers(self):
        rows = crash_history(spike_today=False)
        for i, r in enumerate(rows):
            r["custom_metrics"]["Work"] = 3 if i >= HISTORY_DAYS - 8 else 1
        status = current_danger_status(rows, today=day(HISTORY_DAYS - 1))
        assert status.status == DANGER
        load = [m for m in status.matched_triggers if m.type == CUMULATIVE_LOAD]
        assert [m.metric for m in load] == ["exertion_score"]
        assert load[0].current_z == pytest.approx(2.55, abs=0.01)
        assert load[0].score == pytest.approx(40 + 20 * (load[0].current_z - 0.8))

    def test_datetime_today_accepted(self, spike_history, last_day):
        now = datetime.combine(last_day, time(18, 30))
        assert current_danger_status(spike_history, today=now).status == DANGER

    def test_dict_form(self, spike_history, last_day):
        d = current_danger(spike_history, today=last_day)
        assert d["status"] == DANGER
        assert isinstance(d["matched_triggers"][0], dict)
        assert d["insufficient_data_reason"] is None


class TestStable:

    def test_calm_week_is_stable(self, calm_history, last_day):
        status = PEMDangerScorer().evaluate(calm_history, today=last_day)
        assert status.status == STABLE
        assert status.level == 0
        assert status.matched_triggers == []

    def test_biometric_snapshot(self, calm_history, last_day):
        status = PEMDangerScorer().evaluate(calm_history, today=last_day)
        readings = {b.key: b for b in status.biometrics}
        # No HRV / RHR logged in this history
        assert set(readings) == {"step_count"}
        assert readings["step_count"].status == "normal"

    @pytest.mark.parametrize("hrv,rhr,steps,expected", [
        (48, 57, 2000, {"hrv": "optimal", "resting_heart_rate": "optimal", "step_count": "optimal"}),
        (36, 66, 9000, {"hrv": "strained", "resting_heart_rate": "strained", "step_count": "strained"}),
        (42, 62, 4000, {"hrv": "normal", "resting_heart_rate": "normal", "step_count": "normal"}),
    ])
    def test_biometric_bands(self, hrv, rhr, steps, expected):
        df = load_observations([{"date": "2024-01-01", "hrv": hrv,
                                 "resting_heart_rate": rhr, "step_count": steps}])
        baseline = {
            "hrv": BaselineStat(42.0, 2.0),
            "resting_heart_rate": BaselineStat(62.0, 2.0),
            "step_count": BaselineStat(4000.0, 2000.0),
        }
        readings = PEMDangerScorer()._biometrics(df, 0, baseline)
        assert {b.key: b.status for b in readings} == expected
