"""
Experiment (intervention) analysis.

Pre/post comparison
    Treatment window ``[start, end]`` (end defaults to today), baseline
    window of the same length right before it.  Both need at least 3
    composite-score samples.  ``change_percent`` is

        (treatment_mean − baseline_mean) / baseline_mean · 100

    so a POSITIVE change means the composite went up, which is worse (lower
    composite = healthier).  ``is_significant`` is the plain
    ``|change_percent| > 5`` rule, not a hypothesis test.

Multi-experiment OLS
    With several overlapping experiments the pre/post numbers mix effects.
    For every metric regress the daily value on one 0/1 column per
    experiment (plus intercept) to get each experiment's independent shift.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm

from analytics.baseline import baseline_stats
from config import DEFAULT_CONFIG, AnalysisConfig
from constants import metric_direction
from observations import Rows, finite_dict, numeric_metrics
from scoring import Polarity, enhance

log = logging.getLogger("experiments")

MIN_OLS_DAYS = 14
MIN_OLS_VALUES = 10
OLS_Z_SHIFT = 0.1
OLS_PCT_CHANGE = 5.0

Experiment = Mapping[str, Any]


@dataclass
class ExperimentResult:
    experiment_id: Optional[str]
    metric_name: str
    baseline_mean: float
    treatment_mean: float
    change_percent: float
    is_significant: bool
    improved: bool
    sample_size_baseline: int
    sample_size_treatment: int

    def to_dict(self):
        return finite_dict(asdict(self))


@dataclass
class ExperimentImpact:
    metric: str
    coefficient: float
    z_score_shift: float
    percent_change: float
    p_value: Optional[float]
    significance: str
    confidence: float

    def to_dict(self):
        return finite_dict(asdict(self))


@dataclass
class ExperimentReport:
    experiment_id: Optional[str]
    name: str = ""
    impacts: List[ExperimentImpact] = field(default_factory=list)

    def to_dict(self):
        return {
            "experiment_id": self.experiment_id,
            "name": self.name,
            "impacts": [i.to_dict() for i in self.impacts],
        }


def _as_date(val: Union[str, date, datetime, None], what: str) -> Optional[date]:
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    try:
        return date.fromisoformat(str(val)[:10])
    except ValueError as e:
        raise ValueError(f"Malformed experiment {what}: {val!r}") from e


def experiment_window(experiment: Experiment, today: Optional[date] = None):
    """``(start, end)`` dates of an experiment; raises on bad input."""
    start = _as_date(experiment.get("start_date"), "start_date")
    if start is None:
        raise ValueError("Experiment needs a start_date")
    end = _as_date(experiment.get("end_date"), "end_date") or (today or date.today())
    if end < start:
        raise ValueError(f"Experiment ends ({end}) before it starts ({start})")
    return start, end


def confidence_score(history_size: int, active_days: int) -> float:
    """How well "normal" is known (max 0.8) plus exposure (max 0.2, full at 30 days)."""
    baseline_conf = max(0.0, min(0.8, 1 - 10 / history_size)) if history_size else 0.0
    exposure_conf = min(0.2, active_days / 30 * 0.2)
    return baseline_conf + exposure_conf


class ExperimentAnalyzer:

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    # ─── Pre / post ──────────────────────────────────────────

    def analyze(self, experiment: Experiment, rows: Rows, today: Optional[date] = None,
                polarity: Union[Polarity, str] = Polarity.UNDESIRABLE,
                metric: str = "composite_score") -> Optional[ExperimentResult]:
        cfg = self.config
        start, end = experiment_window(experiment, today)
        duration = end - start
        baseline_start = start - duration

        # Score the whole history first so both windows share one normalization
        df = enhance(rows, polarity=polarity, categories=cfg.categories)
        if df.empty or metric not in df.columns:
            return None

        days = df["date"].dt.date
        base = df.loc[(days >= baseline_start) & (days <= start - timedelta(days=1)), metric].dropna()
        treat = df.loc[(days >= start) & (days <= end), metric].dropna()
        if len(base) < cfg.min_experiment_samples or len(treat) < cfg.min_experiment_samples:
            log.info("   Experiment %s: not enough data (%d baseline, %d treatment)",
                     experiment.get("id"), len(base), len(treat))
            return None

        baseline_mean = float(base.mean())
        treatment_mean = float(treat.mean())
        change = (treatment_mean - baseline_mean) / baseline_mean * 100 if baseline_mean != 0 else 0.0
        if metric_direction(metric) == "lower":
            improved = treatment_mean < baseline_mean
        else:
            improved = treatment_mean > baseline_mean

        return ExperimentResult(
            experiment_id=experiment.get("id"),
            metric_name=metric,
            baseline_mean=baseline_mean,
            treatment_mean=treatment_mean,
            change_percent=change,
            is_significant=abs(change) > cfg.experiment_change_pct,
            improved=improved,
            sample_size_baseline=int(len(base)),
            sample_size_treatment=int(len(treat)),
        )

    # ─── Multi-experiment OLS ────────────────────────────────

    def _ols_metrics(self, df: pd.DataFrame) -> List[str]:
        # Exertion is what the user does, not an outcome of the experiment
        cats = self.config.categories
        return [m for m in numeric_metrics(df)
                if m != "exertion_score" and not cats.is_exertion(m)]

    def analyze_many(self, experiments: Sequence[Experiment], rows: Rows,
                     today: Optional[date] = None,
                     polarity: Union[Polarity, str] = Polarity.UNDESIRABLE) -> List[ExperimentReport]:
        if not experiments:
            return []
        df = enhance(rows, polarity=polarity, categories=self.config.categories)
        df = df[df["observed"]] if not df.empty else df
        if len(df) < MIN_OLS_DAYS:
            log.info("   Experiment OLS: %d days, need %d", len(df), MIN_OLS_DAYS)
            return []

        windows = [experiment_window(e, today) for e in experiments]
        days = df["date"].dt.date
        indicators = pd.DataFrame(
            {f"exp_{i}": ((days >= s) & (days <= e)).astype(float) for i, (s, e) in enumerate(windows)},
            index=df.index,
        )
        metrics = self._ols_metrics(df)
        baseline = baseline_stats(df, metrics)
        reports = [ExperimentReport(e.get("id"), e.get("name", "")) for e in experiments]

        for metric in metrics:
            mask = df[metric].notna()
            y = df.loc[mask, metric].to_numpy(dtype=float)
            if y.size < MIN_OLS_VALUES:
                continue
            X = sm.add_constant(indicators.loc[mask].to_numpy(), has_constant="add")
            if np.linalg.matrix_rank(X) < X.shape[1]:
                log.debug("   Experiment OLS: %s design is singular, skipped", metric)
                continue
            fit = sm.OLS(y, X).fit()

            stat = baseline.get(metric)
            std = stat.std if stat and stat.std else 1.0
            mean = stat.mean if stat and stat.mean else 1.0
            for i, report in enumerate(reports):
                coeff = float(fit.params[i + 1])
                p = float(fit.pvalues[i + 1])
                z_shift = coeff / std
                pct = coeff / mean * 100
                is_good = coeff < 0 if metric_direction(metric) == "lower" else coeff > 0
                if abs(z_shift) > OLS_Z_SHIFT or abs(pct) > OLS_PCT_CHANGE:
                    significance = "positive" if is_good else "negative"
                else:
                    significance = "neutral"
                active = int(X[:, i + 1].sum())
                report.impacts.append(ExperimentImpact(
                    metric=metric,
                    coefficient=coeff,
                    z_score_shift=z_shift,
                    percent_change=pct,
                    p_value=None if np.isnan(p) else p,
                    significance=significance,
                    confidence=confidence_score(int(y.size), active),
                ))
        log.info("   Experiment OLS: %d experiments x %d metrics", len(experiments), len(metrics))
        return reports
