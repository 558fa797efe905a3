"""
Safe-zone thresholds and recovery velocity.

ThresholdDetector
    Sort days by a trigger metric, split them into 4 equal buckets and
    compare the mean impact (symptom score by default) per bucket.  When
    bucket 3 or 4 jumps above 1.5 × bucket 1, the trigger value where that
    bucket begins is reported as the safe-zone limit.

RecoveryVelocityEstimator
    An exertion spike is a day above ``mean + 1.5·std``.  The outcome value
    of the day before the spike is the reference; the first of the next 7
    days that is back on the good side of it (per the direction registry)
    marks recovery.  Unrecovered spikes count as 8 days.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from config import DEFAULT_CONFIG, AnalysisConfig
from constants import metric_direction
from observations import Rows, finite_dict, load_observations

log = logging.getLogger("insights")

DEFAULT_IMPACT_METRIC = "symptom_score"
DEFAULT_TRIGGER_METRICS = ("step_count", "Physical Exertion", "Cognitive Exertion", "Work")
DEFAULT_OUTCOME_METRICS = ("hrv", "symptom_score", "composite_score")


@dataclass
class ThresholdInsight:
    metric: str
    impact_metric: str
    safe_zone_limit: float
    bucket_means: List[float] = field(default_factory=list)
    description: str = ""

    def to_dict(self):
        return finite_dict(asdict(self))


@dataclass
class RecoveryVelocityResult:
    metric: str
    outcome_metric: str
    recovery_days: float
    sample_count: int
    confidence: float
    spike_threshold: float

    def to_dict(self):
        return finite_dict(asdict(self))


def _paired(df: pd.DataFrame, x_col: str, y_col: str) -> pd.DataFrame:
    if x_col not in df.columns or y_col not in df.columns:
        return pd.DataFrame(columns=["x", "y"])
    pairs = pd.DataFrame({"x": df[x_col], "y": df[y_col]}).dropna()
    return pairs


class ThresholdDetector:

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def detect(self, rows: Rows, impact_metric: str = DEFAULT_IMPACT_METRIC,
               trigger_metrics: Optional[Sequence[str]] = None) -> List[ThresholdInsight]:
        cfg = self.config
        df = load_observations(rows)
        triggers = list(trigger_metrics) if trigger_metrics is not None else list(DEFAULT_TRIGGER_METRICS)
        insights: List[ThresholdInsight] = []

        for m in triggers:
            pairs = _paired(df, m, impact_metric)
            if len(pairs) < cfg.min_threshold_pairs:
                continue
            pairs = pairs.sort_values("x", kind="mergesort").reset_index(drop=True)

            k = cfg.threshold_buckets
            size = len(pairs) // k
            means = []
            for i in range(k):
                end = len(pairs) if i == k - 1 else (i + 1) * size
                means.append(float(pairs["y"].iloc[i * size:end].mean()))

            jump = cfg.threshold_jump_ratio * means[0]
            # Buckets from the third one on, first jump wins
            jumping = [i for i in range(2, k) if means[i] > jump]
            if not jumping:
                continue
            limit = float(pairs["x"].iat[jumping[0] * size])
            name_m = m.replace("_", " ")
            name_i = impact_metric.replace("_", " ")
            insights.append(ThresholdInsight(
                metric=m,
                impact_metric=impact_metric,
                safe_zone_limit=limit,
                bucket_means=means,
                description=(f"Staying below {limit:,.0f} {name_m} keeps your "
                             f"{name_i} significantly lower."),
            ))
            log.info("   Threshold: %s safe below %.1f (%s)", m, limit, impact_metric)
        return insights


class RecoveryVelocityEstimator:

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def exertion_metrics(self, df: pd.DataFrame) -> List[str]:
        cats = self.config.categories
        out = [c for c in ("exertion_score", "step_count") if c in df.columns]
        out += [c for c in df.columns if c not in out and cats.is_exertion(c)]
        return out

    def estimate(self, rows: Rows,
                 outcome_metrics: Optional[Sequence[str]] = None) -> List[RecoveryVelocityResult]:
        cfg = self.config
        df = load_observations(rows)
        if df.empty:
            return []
        outcomes = [m for m in (outcome_metrics or DEFAULT_OUTCOME_METRICS) if m in df.columns]
        results: List[RecoveryVelocityResult] = []

        for metric in self.exertion_metrics(df):
            series = df[metric]
            vals = series.dropna().to_numpy(dtype=float)
            if vals.size < 2:
                continue
            threshold = float(np.mean(vals) + cfg.spike_std * np.std(vals))
            spike_idx = np.flatnonzero((series > threshold).to_numpy())
            if spike_idx.size == 0:
                continue

            for outcome in outcomes:
                days = self._recovery_days(df[outcome].to_numpy(dtype=float), spike_idx,
                                           metric_direction(outcome))
                if len(days) < cfg.min_recovery_spikes:
                    continue
                results.append(RecoveryVelocityResult(
                    metric=metric,
                    outcome_metric=outcome,
                    recovery_days=float(np.mean(days)),
                    sample_count=len(days),
                    confidence=min(len(days) / cfg.recovery_full_confidence, 1.0),
                    spike_threshold=threshold,
                ))
        results.sort(key=lambda r: r.recovery_days, reverse=True)
        return results

    def _recovery_days(self, outcome: np.ndarray, spikes: np.ndarray, direction: str) -> List[int]:
        cfg = self.config
        days = []
        for idx in spikes:
            if idx == 0 or np.isnan(outcome[idx - 1]):
                continue
            reference = outcome[idx - 1]
            recovered = cfg.recovery_cap_days
            for d in range(1, cfg.recovery_scan_days + 1):
                j = idx + d
                if j >= len(outcome):
                    break
                val = outcome[j]
                if np.isnan(val):
                    continue
                if (val >= reference) if direction == "higher" else (val <= reference):
                    recovered = d
                    break
            days.append(recovered)
        return days
