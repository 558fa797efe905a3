"""
Live PEM danger scoring.

Stateless state machine, recomputed from the full history on every call:

  needs_data/no_history      fewer than 10 observed days
  needs_data/no_recent_data  nothing logged in the trailing week
  needs_data/no_crashes      no crash ever flagged, nothing to learn from
  danger                     max match score >= 50
  stable                     otherwise (with biometric reassurance)

A personal trigger matches a recent day when today's z reaches 75 % of the
historical peak with the same sign, and the crash it would predict
(day + |lead|) is today or later:

    score = min(100, 50 + 50 · |z| / magnitude)

Independently, a trailing-week average z above 0.8 for exertion or steps
adds a generic "Cumulative Load" match:

    score = min(100, 40 + 20 · (z − 0.8))
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from analytics.baseline import Baseline, baseline_stats, z_score
from analytics.epochs import EpochPipeline, crash_starts
from analytics.pem_phases import DROP, SPIKE, DiscoveredTrigger, PreCrashPhaseAnalyzer
from config import DEFAULT_CONFIG, AnalysisConfig
from constants import metric_label
from observations import Rows, finite_dict, numeric_metrics, observed_count, value_at
from scoring import Polarity, ensure_scored

log = logging.getLogger("pem_danger")

DANGER = "danger"
STABLE = "stable"
NEEDS_DATA = "needs_data"

NO_HISTORY = "no_history"
NO_RECENT_DATA = "no_recent_data"
NO_CRASHES = "no_crashes"

CUMULATIVE_LOAD = "Cumulative Load"
CUMULATIVE_METRICS = (("exertion_score", "exertion"), ("step_count", "activity"))

BIOMETRICS = (("hrv", "HRV"), ("resting_heart_rate", "Resting HR"), ("step_count", "Steps"))


@dataclass
class MatchedTrigger:
    metric: str
    type: str
    lead_days_start: int
    magnitude: float
    current_z: float
    is_personal: bool
    score: float
    description: str = ""

    def to_dict(self):
        return finite_dict(asdict(self))


@dataclass
class BiometricReading:
    key: str
    label: str
    z_score: float
    status: str

    def to_dict(self):
        return finite_dict(asdict(self))


@dataclass
class PemDangerStatus:
    status: str
    level: float
    matched_triggers: List[MatchedTrigger] = field(default_factory=list)
    biometrics: Optional[List[BiometricReading]] = None
    insufficient_data_reason: Optional[str] = None

    def to_dict(self):
        return {
            "status": self.status,
            "level": self.level,
            "matched_triggers": [m.to_dict() for m in self.matched_triggers],
            "biometrics": None if self.biometrics is None else [b.to_dict() for b in self.biometrics],
            "insufficient_data_reason": self.insufficient_data_reason,
        }


def _needs_data(reason: str) -> PemDangerStatus:
    return PemDangerStatus(status=NEEDS_DATA, level=0, insufficient_data_reason=reason)


def _day_z(df: pd.DataFrame, idx: int, metric: str, baseline: Baseline) -> Optional[float]:
    return z_score(value_at(df, idx, metric), baseline.get(metric))


def trigger_z(df: pd.DataFrame, idx: int, trigger: DiscoveredTrigger,
              baseline: Baseline) -> Optional[float]:
    """Today's z for a single or synergistic (``"A + B"``) trigger."""
    if trigger.is_synergistic:
        z1, z2 = (_day_z(df, idx, m, baseline) for m in trigger.members[:2])
        if z1 is None or z2 is None:
            return None
        return (z1 + z2) / np.sqrt(2)
    return _day_z(df, idx, trigger.metric, baseline)


class PEMDangerScorer:

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def evaluate(self, rows: Rows, today: Optional[date] = None,
                 polarity: Union[Polarity, str] = Polarity.UNDESIRABLE) -> PemDangerStatus:
        cfg = self.config
        df = ensure_scored(rows, polarity, cfg.categories)

        if observed_count(df) < cfg.min_history_rows:
            log.info("   Danger: %d observed days, need %d", observed_count(df), cfg.min_history_rows)
            return _needs_data(NO_HISTORY)

        today = pd.Timestamp(today or date.today()).date()
        today_ts = pd.Timestamp(today)
        window_start = today_ts - pd.Timedelta(days=cfg.recent_window_days)
        in_window = df["observed"] & (df["date"] >= window_start) & (df["date"] <= today_ts)
        recent_idx = [int(i) for i in np.flatnonzero(in_window.to_numpy())]
        if not recent_idx:
            return _needs_data(NO_RECENT_DATA)

        metrics = numeric_metrics(df)
        baseline = baseline_stats(df, metrics)

        starts = crash_starts(df)
        if not starts:
            return _needs_data(NO_CRASHES)

        profile = EpochPipeline(cfg).run(df, starts, metrics, baseline)
        findings = PreCrashPhaseAnalyzer(cfg).analyze(profile, baseline)

        matches = self._match_personal(df, recent_idx, findings.discoveries, baseline, today)
        matches += self._cumulative_load(df, recent_idx, baseline)

        level = max((m.score for m in matches), default=0.0)
        if level >= cfg.danger_level:
            matches.sort(key=lambda m: m.score, reverse=True)
            log.info("   Danger: level %.0f, %d matches", level, len(matches))
            return PemDangerStatus(
                status=DANGER,
                level=level,
                matched_triggers=matches[:cfg.max_matched_triggers],
            )
        return PemDangerStatus(
            status=STABLE,
            level=0,
            biometrics=self._biometrics(df, recent_idx[-1], baseline),
        )

    def _match_personal(self, df: pd.DataFrame, recent_idx: List[int],
                        triggers: List[DiscoveredTrigger], baseline: Baseline,
                        today: date) -> List[MatchedTrigger]:
        cfg = self.config
        seen = set()
        matches: List[MatchedTrigger] = []
        for idx in recent_idx:
            day = df["date"].iat[idx].date()
            for tr in triggers:
                key = (tr.metric, tr.type)
                if key in seen:
                    continue
                z = trigger_z(df, idx, tr, baseline)
                if z is None or tr.magnitude <= 0:
                    continue
                same_sign = (tr.type == SPIKE and z > 0) or (tr.type == DROP and z < 0)
                if abs(z) < tr.magnitude * cfg.match_ratio or not same_sign:
                    continue
                impact_day = day + timedelta(days=abs(tr.lead_days_start))
                if impact_day < today:
                    continue
                seen.add(key)
                score = min(100.0, 50 + 50 * abs(z) / tr.magnitude)
                matches.append(MatchedTrigger(
                    metric=tr.metric,
                    type=tr.classification,
                    lead_days_start=tr.lead_days_start,
                    magnitude=tr.magnitude,
                    current_z=float(z),
                    is_personal=True,
                    score=score,
                    description=(f"{metric_label(tr.metric)} {tr.type} on {day.isoformat()} "
                                 f"matches your pattern {abs(tr.lead_days_start)} days before past crashes."),
                ))
        return matches

    def _cumulative_load(self, df: pd.DataFrame, recent_idx: List[int],
                         baseline: Baseline) -> List[MatchedTrigger]:
        cfg = self.config
        out = []
        for metric, label in CUMULATIVE_METRICS:
            zs = [z for z in (_day_z(df, i, metric, baseline) for i in recent_idx) if z is not None]
            if not zs:
                continue
            avg = float(np.mean(zs))
            if avg > cfg.cumulative_load_z:
                out.append(MatchedTrigger(
                    metric=metric,
                    type=CUMULATIVE_LOAD,
                    lead_days_start=0,
                    magnitude=1.0,
                    current_z=avg,
                    is_personal=False,
                    score=min(100.0, 40 + 20 * (avg - cfg.cumulative_load_z)),
                    description=f"Your {label} over the last week is well above your usual level.",
                ))
        return out

    def _biometrics(self, df: pd.DataFrame, idx: int,
                    baseline: Baseline) -> List[BiometricReading]:
        cfg = self.config
        readings = []
        for key, label in BIOMETRICS:
            z = _day_z(df, idx, key, baseline)
            if z is None:
                continue
            if key == "hrv":
                # Higher HRV = better recovery
                good, bad = z > cfg.biometric_optimal_z, z < -cfg.biometric_strained_z
            else:
                # Lower RHR / paced activity = less strain
                good, bad = z < -cfg.biometric_optimal_z, z > cfg.biometric_strained_z
            status = "optimal" if good else "strained" if bad else "normal"
            readings.append(BiometricReading(key=key, label=label, z_score=float(z), status=status))
        return readings


def current_danger(rows: Rows, today: Optional[date] = None,
                   config: Optional[AnalysisConfig] = None,
                   polarity: Union[Polarity, str] = Polarity.UNDESIRABLE) -> Dict:
    """Dict form of :meth:`PEMDangerScorer.evaluate` for JSON consumers."""
    return PEMDangerScorer(config).evaluate(rows, today, polarity).to_dict()
