"""Personal baseline (mean / std over the full history) and z-scores."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

# z assigned to any rise above a zero-variance baseline
ZERO_VARIANCE_Z = 2.0


@dataclass(frozen=True)
class BaselineStat:
    mean: float
    std: float

    def to_dict(self):
        return {"mean": self.mean, "std": self.std}


Baseline = Dict[str, BaselineStat]


def baseline_stats(df: pd.DataFrame, metrics: Iterable[str]) -> Baseline:
    """Population mean / std of each metric over every available sample.

    Metrics with no samples are left out of the result; callers must check
    for absence.
    """
    stats: Baseline = {}
    observed = df[df["observed"]] if "observed" in df.columns else df
    for m in metrics:
        if m not in observed.columns:
            continue
        vals = pd.to_numeric(observed[m], errors="coerce").dropna().to_numpy(dtype=float)
        if vals.size == 0:
            continue
        stats[m] = BaselineStat(mean=float(np.mean(vals)), std=float(np.std(vals)))
    return stats


def z_score(value: Optional[float], stat: Optional[BaselineStat]) -> Optional[float]:
    """``(value - mean) / std``; None when the value or baseline is missing.

    A zero-variance baseline yields ``ZERO_VARIANCE_Z`` for any value above
    the mean and 0 otherwise.
    """
    if value is None or stat is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if stat.std > 0:
        return (value - stat.mean) / stat.std
    return ZERO_VARIANCE_Z if value > stat.mean else 0.0


def z_series(values: pd.Series, stat: Optional[BaselineStat]) -> pd.Series:
    """Vectorised :func:`z_score`; missing values stay NaN."""
    if stat is None:
        return pd.Series(np.nan, index=values.index)
    if stat.std > 0:
        return (values - stat.mean) / stat.std
    z = pd.Series(np.where(values > stat.mean, ZERO_VARIANCE_Z, 0.0), index=values.index)
    return z.where(values.notna())
