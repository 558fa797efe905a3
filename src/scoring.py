"""
Score Engine
============
Derives the daily symptom, exertion and composite scores from raw trackers.

Scores are ALWAYS recomputed from the raw tracker columns, never read back
from a stored value, so editing a historical tracker is reflected on the
next call.

Composite (higher = worse):

    UNDESIRABLE polarity (exertion is a PEM risk factor):
        symptoms + sleep + exertion + rhr - hrv - steps
    DESIRABLE polarity (exertion is a goal):
        symptoms + sleep - exertion + rhr - hrv - steps

In :func:`enhance` every component except symptoms is min-max normalized to
0..1 and multiplied by ``WEIGHT`` before being combined.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

import numpy as np
import pandas as pd

from constants import DEFAULT_CATEGORIES, EXCLUDED, EXERTION, MetricCategoryTable
from observations import Rows, load_observations, to_number, tracker_columns

log = logging.getLogger("scoring")

WEIGHT = 3.0
SLEEP_KEY = "Sleep"


class Polarity(str, Enum):
    """Whether exertion counts against (UNDESIRABLE) or for (DESIRABLE) the user."""

    UNDESIRABLE = "undesirable"
    DESIRABLE = "desirable"


def resolve_polarity(polarity: Union[Polarity, str]) -> Polarity:
    try:
        return Polarity(polarity)
    except ValueError:
        raise ValueError(
            f"Invalid polarity {polarity!r}; expected one of {[p.value for p in Polarity]}"
        ) from None


@dataclass(frozen=True)
class MinMax:
    min: float
    max: float


NormalizationStats = Dict[str, MinMax]


# ─── Per-day scores ──────────────────────────────────────────


def exertion_score(metrics: Optional[Mapping[str, Any]],
                   categories: MetricCategoryTable = DEFAULT_CATEGORIES) -> float:
    """Sum of every exertion-category tracker; non-numeric values skipped."""
    if not metrics:
        return 0.0
    total = 0.0
    for key, val in metrics.items():
        num = to_number(val)
        if num is not None and categories.is_exertion(key):
            total += num
    return total


def symptom_score(metrics: Optional[Mapping[str, Any]],
                  categories: MetricCategoryTable = DEFAULT_CATEGORIES) -> float:
    """Sum of every numeric tracker that is neither exertion nor excluded."""
    if not metrics:
        return 0.0
    total = 0.0
    for key, val in metrics.items():
        num = to_number(val)
        if num is None or categories.category(key) in (EXERTION, EXCLUDED):
            continue
        total += num
    return total


def _combine(symptoms, exertion, sleep, rhr, hrv, steps, polarity: Polarity):
    signed_exertion = exertion if polarity is Polarity.UNDESIRABLE else -exertion
    return symptoms + sleep + signed_exertion + rhr - hrv - steps


def composite_score(components: Mapping[str, Optional[float]],
                    polarity: Union[Polarity, str] = Polarity.UNDESIRABLE) -> float:
    """Linear composite of the score components (higher = worse).

    ``components`` keys: symptom_score, exertion_score, sleep_score, rhr,
    hrv, normalized_steps.  Missing components count as 0.
    """
    polarity = resolve_polarity(polarity)

    def g(key):
        return to_number(components.get(key)) or 0.0

    score = _combine(g("symptom_score"), g("exertion_score"), g("sleep_score"),
                     g("rhr"), g("hrv"), g("normalized_steps"), polarity)
    return round(score, 1)


# ─── Normalization ───────────────────────────────────────────


def _min_max(values: pd.Series, force_zero_min: bool = False) -> MinMax:
    vals = values.dropna()
    if vals.empty:
        return MinMax(0.0, 1.0)
    lo = 0.0 if force_zero_min else float(vals.min())
    hi = float(vals.max())
    if hi == lo:
        hi = lo + 1.0
    return MinMax(lo, hi)


def _sleep_column(df: pd.DataFrame) -> Optional[str]:
    if SLEEP_KEY in df.columns:
        return SLEEP_KEY
    for c in df.columns:
        if str(c).casefold() == SLEEP_KEY.casefold():
            return c
    return None


def min_max_stats(rows: Rows,
                  categories: MetricCategoryTable = DEFAULT_CATEGORIES) -> NormalizationStats:
    """Per-component min/max over the dataset.

    Steps, exertion and sleep are anchored at 0.  ``max`` never equals
    ``min``.
    """
    df = load_observations(rows)
    if df.empty:
        return {k: MinMax(0.0, 1.0) for k in ("hrv", "rhr", "steps", "exertion", "sleep")}
    observed = df[df["observed"]]
    exertion = _exertion_series(observed, categories)
    sleep_col = _sleep_column(observed)
    sleep = observed[sleep_col] if sleep_col else pd.Series(dtype=float)
    return {
        "hrv": _min_max(observed["hrv"]),
        "rhr": _min_max(observed["resting_heart_rate"]),
        "steps": _min_max(observed["step_count"], force_zero_min=True),
        "exertion": _min_max(exertion, force_zero_min=True),
        "sleep": _min_max(sleep, force_zero_min=True),
    }


def normalize(value: Optional[float], lo: float, hi: float) -> float:
    """Scale ``value`` to 0..1 over ``[lo, hi]``; missing values map to 0."""
    num = to_number(value)
    if num is None:
        return 0.0
    if hi == lo:
        return 0.0
    return (num - lo) / (hi - lo)


def _normalize_series(values: pd.Series, mm: MinMax) -> pd.Series:
    span = mm.max - mm.min
    if span == 0:
        return pd.Series(0.0, index=values.index)
    return ((values - mm.min) / span).fillna(0.0)


# ─── Dataset scoring ─────────────────────────────────────────


def _exertion_series(df: pd.DataFrame, categories: MetricCategoryTable) -> pd.Series:
    cols = [c for c in tracker_columns(df) if categories.is_exertion(c)]
    if not cols:
        return pd.Series(0.0, index=df.index)
    return df[cols].sum(axis=1)


def _symptom_series(df: pd.DataFrame, categories: MetricCategoryTable) -> pd.Series:
    cols = [c for c in tracker_columns(df)
            if categories.category(c) not in (EXERTION, EXCLUDED)]
    if not cols:
        return pd.Series(0.0, index=df.index)
    return df[cols].sum(axis=1)


def enhance(rows: Rows,
            shared_stats: Optional[NormalizationStats] = None,
            polarity: Union[Polarity, str] = Polarity.UNDESIRABLE,
            categories: MetricCategoryTable = DEFAULT_CATEGORIES) -> pd.DataFrame:
    """Recompute symptom / exertion / composite scores for every row.

    ``shared_stats`` lets several datasets share one normalization (e.g. a
    comparison window scored against the full history).  Gap-fill rows keep
    NaN scores.
    """
    polarity = resolve_polarity(polarity)
    df = load_observations(rows)
    if df.empty:
        return df

    observed = df["observed"]
    df["exertion_score"] = _exertion_series(df, categories).where(observed)
    df["symptom_score"] = _symptom_series(df, categories).where(observed)

    stats = shared_stats or min_max_stats(df, categories)

    sleep_col = _sleep_column(df)
    sleep_raw = df[sleep_col] if sleep_col else pd.Series(np.nan, index=df.index)

    norm_steps = _normalize_series(df["step_count"], stats["steps"]) * WEIGHT
    norm_rhr = _normalize_series(df["resting_heart_rate"], stats["rhr"]) * WEIGHT
    norm_hrv = _normalize_series(df["hrv"], stats["hrv"]) * WEIGHT
    norm_exertion = _normalize_series(df["exertion_score"], stats["exertion"]) * WEIGHT
    norm_sleep = _normalize_series(sleep_raw, stats["sleep"]) * WEIGHT

    composite = _combine(df["symptom_score"].fillna(0.0), norm_exertion, norm_sleep,
                         norm_rhr, norm_hrv, norm_steps, polarity)
    composite = composite.clip(lower=0.0).round(1)

    df["composite_score"] = composite.where(observed)
    df["normalized_hrv"] = norm_hrv.round(2).where(observed)
    df["normalized_rhr"] = norm_rhr.round(2).where(observed)
    df["normalized_steps"] = norm_steps.round(2).where(observed)
    df["normalized_exertion"] = norm_exertion.round(2).where(observed)
    df["normalized_sleep"] = norm_sleep.round(2).where(observed)

    n_obs = int(observed.sum())
    if n_obs:
        log.debug("   Scored %d days (polarity=%s)", n_obs, polarity.value)
    return df


def ensure_scored(rows: Rows,
                  polarity: Union[Polarity, str, None] = None,
                  categories: MetricCategoryTable = DEFAULT_CATEGORIES) -> pd.DataFrame:
    """Load and score rows.

    With ``polarity=None`` a frame that already carries composite scores is
    returned as it is; an explicit polarity always re-scores.
    """
    df = load_observations(rows)
    if polarity is None:
        if "composite_score" in df.columns:
            return df
        polarity = Polarity.UNDESIRABLE
    return enhance(df, polarity=polarity, categories=categories)
