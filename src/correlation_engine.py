"""
Correlation Engine
==================
All-pairs, multi-lag Pearson correlations over a user's scored daily rows.

Architecture (3 layers):
  Layer 0 - Prepare:  load + gap-fill the frame, auto-discover numeric
            metrics (top-level vitals, derived scores and every tracker).
  Layer 1 - Pearson:  for each ordered pair (A, B) and lag ∈ {0, 1, 2}
            correlate A[t] with B[t + lag].  Lag 0 is symmetric and computed
            once per unordered pair; lags 1-2 are directional and computed
            both ways.  Significance is the two-tailed Student-t test

                t  = r · √((n − 2) / (1 − r²)),   df = n − 2
                p  = 2 · (1 − CDF_t(|t|, df))

            with r² → 1 giving p = 0.
  Layer 2 - Enrich:   median split of A, mean of B in each half, percent
            change, direction / strength / significance labels and the
            registry-aware ``is_good`` flag.

Results with an exertion metric as the OUTCOME (metric B) are dropped:
exertion is an input the user chooses, not an effect.

Lag-0 results are always kept (they fill the correlation matrix); lagged
results only when p < ``trend_p`` (0.15).  Output is sorted by |r|.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sp_stats

from config import DEFAULT_CONFIG, AnalysisConfig
from constants import metric_direction
from observations import Rows, finite_dict, load_observations, numeric_metrics, observed_count

log = logging.getLogger("correlation_engine")

# |r| cut-offs for direction / strength labels
NEUTRAL_R = 0.1
MODERATE_R = 0.5
STRONG_R = 0.7

# Below this std a series is treated as constant
MIN_STD = 1e-10


@dataclass
class CorrelationResult:
    metric_a: str
    metric_b: str
    lag: int
    coefficient: float
    p_value: float
    sample_size: int
    direction: str
    strength: str
    significance: str
    is_good: bool
    median_a: float
    median_b: float
    typical_value: Optional[float]
    improved_value: Optional[float]
    percent_change: float
    description: str = ""

    def to_dict(self):
        return finite_dict(asdict(self))


def pearson_p_value(r: float, n: int) -> float:
    """Two-tailed p-value of Pearson r with n − 2 degrees of freedom."""
    if n <= 2:
        return 1.0
    r2 = r * r
    if r2 >= 1.0 - 1e-12:
        return 0.0
    t_stat = r * math.sqrt((n - 2) / (1.0 - r2))
    return float(2 * sp_stats.t.sf(abs(t_stat), n - 2))


def aligned_pairs(df: pd.DataFrame, metric_a: str, metric_b: str,
                  lag: int) -> Tuple[np.ndarray, np.ndarray]:
    """``x[t] = A[t]``, ``y[t] = B[t + lag]`` over days where both exist."""
    x = df[metric_a].to_numpy(dtype=float)
    y = df[metric_b].shift(-lag).to_numpy(dtype=float)
    mask = ~np.isnan(x) & ~np.isnan(y)
    return x[mask], y[mask]


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    if abs(value) >= 1000:
        return f"{round(value):,}"
    if abs(value) >= 10:
        return str(round(value))
    return f"{value:.1f}"


def _describe(a: str, b: str, r: float, median_a: float, is_good: bool,
              pct: float, typical: Optional[float], improved: Optional[float]) -> str:
    action = "Keep" if is_good else "Watch"
    verb = "Reduces" if r < 0 else "Increases"
    name_a = a.replace("_", " ").lower()
    name_b = b.replace("_", " ").lower()
    return (
        f"{action} {name_a} above {_fmt(median_a)}\n"
        f"-> {verb} {name_b} by ~{round(abs(pct))}% "
        f"(from {_fmt(typical)} to {_fmt(improved)})"
    )


class CorrelationEngine:
    """Discovers lagged relationships between every pair of metrics."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    # ─── MAIN ENTRY ──────────────────────────────────────────

    def compute(self, rows: Rows) -> List[CorrelationResult]:
        df, metrics = self._layer0_prepare(rows)
        if df is None:
            return []
        raw = self._layer1_pearson(df, metrics)
        results = [self._layer2_enrich(df, *r) for r in raw]
        results.sort(key=lambda c: abs(c.coefficient), reverse=True)
        n_lagged = sum(1 for c in results if c.lag > 0)
        log.info("   Correlations: %d same-day, %d lagged", len(results) - n_lagged, n_lagged)
        return results

    # ─── LAYER 0: Prepare ────────────────────────────────────

    def _layer0_prepare(self, rows: Rows) -> Tuple[Optional[pd.DataFrame], List[str]]:
        df = load_observations(rows)
        n = observed_count(df)
        if n < self.config.min_correlation_rows:
            log.info("   Not enough data for correlation analysis (%d days, need >= %d)",
                     n, self.config.min_correlation_rows)
            return None, []
        metrics = numeric_metrics(df)
        log.info("   Layer 0: %d days, %d metrics", n, len(metrics))
        return df, metrics

    def _is_exertion(self, metric: str) -> bool:
        return metric == "exertion_score" or self.config.categories.is_exertion(metric)

    # ─── LAYER 1: Pearson ────────────────────────────────────

    def _layer1_pearson(self, df: pd.DataFrame,
                        metrics: List[str]) -> List[Tuple[str, str, int, float, float, int]]:
        cfg = self.config
        out = []
        for lag in range(cfg.max_lag + 1):
            for i, a in enumerate(metrics):
                for j, b in enumerate(metrics):
                    if i == j or (lag == 0 and j < i):
                        continue
                    src, dst = a, b
                    # Orient same-day pairs so any exertion metric is the input side
                    if lag == 0 and self._is_exertion(dst) and not self._is_exertion(src):
                        src, dst = dst, src
                    if self._is_exertion(dst):
                        continue
                    res = self._pair(df, src, dst, lag)
                    if res is None:
                        continue
                    r, p, n = res
                    if lag == 0 or p < cfg.trend_p:
                        out.append((src, dst, lag, r, p, n))
        return out

    def _pair(self, df: pd.DataFrame, a: str, b: str,
              lag: int) -> Optional[Tuple[float, float, int]]:
        x, y = aligned_pairs(df, a, b, lag)
        n = len(x)
        if n < self.config.min_aligned_points:
            return None
        if np.std(x) < MIN_STD or np.std(y) < MIN_STD:
            return None
        r = float(np.clip(np.corrcoef(x, y)[0, 1], -1.0, 1.0))
        if math.isnan(r):
            return None
        return r, pearson_p_value(r, n), n

    # ─── LAYER 2: Enrich ─────────────────────────────────────

    def _layer2_enrich(self, df: pd.DataFrame, a: str, b: str, lag: int,
                       r: float, p: float, n: int) -> CorrelationResult:
        cfg = self.config
        x, y = aligned_pairs(df, a, b, lag)
        median_a = float(np.median(x))
        median_b = float(np.median(y))
        high, low = y[x > median_a], y[x <= median_a]
        improved = float(high.mean()) if high.size else None
        typical = float(low.mean()) if low.size else None
        if improved is not None and typical:
            pct = (improved - typical) / abs(typical) * 100
        else:
            pct = 0.0

        if r > NEUTRAL_R:
            direction = "positive"
        elif r < -NEUTRAL_R:
            direction = "negative"
        else:
            direction = "neutral"
        strength = ("strong" if abs(r) > STRONG_R
                    else "moderate" if abs(r) > MODERATE_R else "weak")
        if p < cfg.significance_p:
            significance = "significant"
        elif p < cfg.trend_p:
            significance = "trend"
        else:
            significance = "not_significant"
        is_good = r < 0 if metric_direction(b) == "lower" else r > 0

        return CorrelationResult(
            metric_a=a, metric_b=b, lag=lag,
            coefficient=r, p_value=p, sample_size=n,
            direction=direction, strength=strength, significance=significance,
            is_good=is_good,
            median_a=median_a, median_b=median_b,
            typical_value=typical, improved_value=improved,
            percent_change=pct,
            description=_describe(a, b, r, median_a, is_good, pct, typical, improved),
        )
