"""
Superposed epoch analysis around crash starts.

    extract  →  z-score  →  aggregate

Each crash start anchors a window of day offsets ``-pre .. +post``.  Values
are z-scored against the personal baseline and averaged per
``(offset, metric)`` across all crashes, giving the typical shape of every
metric in the run-up to and aftermath of a crash.

The frame is expected to be gap-filled (one row per calendar day), so row
offsets are day offsets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from analytics.baseline import Baseline, z_series
from config import DEFAULT_CONFIG, AnalysisConfig

log = logging.getLogger("epochs")


@dataclass
class Epoch:
    crash_date: str
    start_index: int
    values: pd.DataFrame                     # index = day offset, columns = metrics
    zscores: Optional[pd.DataFrame] = None


@dataclass
class EpochProfile:
    """Per-offset mean / std / n of the z-scored epochs."""

    mean: pd.DataFrame
    std: pd.DataFrame
    n: pd.DataFrame
    n_events: int
    epochs: List[Epoch] = field(default_factory=list, repr=False)

    @property
    def offsets(self) -> List[int]:
        return [int(o) for o in self.mean.index]

    @property
    def metrics(self) -> List[str]:
        return list(self.mean.columns)

    def to_dict(self) -> List[Dict]:
        rows = []
        for off in self.offsets:
            metrics = {}
            for m in self.metrics:
                mu = self.mean.at[off, m]
                metrics[m] = {
                    "mean": None if np.isnan(mu) else float(mu),
                    "std": None if np.isnan(mu) else float(self.std.at[off, m]),
                    "n": int(self.n.at[off, m]),
                }
            rows.append({"day_offset": off, "metrics": metrics})
        return rows


def crash_starts(df: pd.DataFrame) -> List[int]:
    """Row index of the first day of every run of consecutive crash days.

    Runs are taken over logged days, so an unlogged day inside a crash does
    not split it in two.
    """
    if df.empty or "crash" not in df.columns:
        return []
    crash = df["crash"].astype(bool).to_numpy()
    pos = np.arange(len(df))
    if "observed" in df.columns:
        logged = df["observed"].astype(bool).to_numpy()
        crash, pos = crash[logged], pos[logged]
    if not crash.size:
        return []
    prev = np.concatenate(([False], crash[:-1]))
    return [int(i) for i in pos[crash & ~prev]]


def extract_epochs(df: pd.DataFrame, starts: Sequence[int], metrics: Sequence[str],
                   pre: int = DEFAULT_CONFIG.epoch_pre_days,
                   post: int = DEFAULT_CONFIG.epoch_post_days) -> List[Epoch]:
    """Cut the ``-pre .. +post`` window around every crash start.

    Offsets falling outside the frame are NaN.
    """
    offsets = np.arange(-pre, post + 1)
    data = df.reset_index(drop=True).reindex(columns=list(metrics)).astype(float)
    epochs: List[Epoch] = []
    for start in starts:
        window = data.reindex(start + offsets)
        window.index = offsets
        crash_date = df["date"].iat[start]
        epochs.append(Epoch(
            crash_date=pd.Timestamp(crash_date).date().isoformat(),
            start_index=int(start),
            values=window,
        ))
    return epochs


def zscore_epochs(epochs: Sequence[Epoch], baseline: Baseline) -> List[Epoch]:
    """Return copies of ``epochs`` with z-scores filled in.

    A missing sample or a metric without baseline gives NaN.
    """
    out = []
    for ep in epochs:
        z = pd.DataFrame(
            {m: z_series(ep.values[m], baseline.get(m)) for m in ep.values.columns},
            index=ep.values.index,
        )
        out.append(Epoch(ep.crash_date, ep.start_index, ep.values, z))
    return out


def aggregate_epochs(epochs: Sequence[Epoch], metrics: Sequence[str],
                     pre: int = DEFAULT_CONFIG.epoch_pre_days,
                     post: int = DEFAULT_CONFIG.epoch_post_days) -> EpochProfile:
    """Average z-scores per (offset, metric) over all epochs.

    Offsets with no contributing epoch are NaN with ``n == 0``.
    """
    offsets = np.arange(-pre, post + 1)
    metrics = list(metrics)
    if not epochs or not metrics:
        empty = pd.DataFrame(np.nan, index=offsets, columns=metrics)
        return EpochProfile(empty, empty.copy(), empty.fillna(0).astype(int), 0, list(epochs))

    arr = np.stack([
        ep.zscores.reindex(index=offsets, columns=metrics).to_numpy(dtype=float)
        for ep in epochs
    ])
    valid = ~np.isnan(arr)
    n = valid.sum(axis=0)
    sums = np.where(valid, arr, 0.0).sum(axis=0)
    sq_sums = np.where(valid, arr * arr, 0.0).sum(axis=0)
    safe_n = np.maximum(n, 1)
    mean = np.where(n > 0, sums / safe_n, np.nan)
    var = np.where(n > 0, sq_sums / safe_n - mean * mean, np.nan)
    std = np.sqrt(np.clip(var, 0.0, None))

    return EpochProfile(
        mean=pd.DataFrame(mean, index=offsets, columns=metrics),
        std=pd.DataFrame(std, index=offsets, columns=metrics),
        n=pd.DataFrame(n, index=offsets, columns=metrics),
        n_events=len(epochs),
        epochs=list(epochs),
    )


class EpochPipeline:
    """Extractor → ZScoreNormalizer → Aggregator."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def run(self, df: pd.DataFrame, starts: Sequence[int], metrics: Sequence[str],
            baseline: Baseline) -> EpochProfile:
        pre, post = self.config.epoch_pre_days, self.config.epoch_post_days
        log.info("   Epochs: %d crash starts, %d metrics, window %+d..%+d",
                 len(starts), len(metrics), -pre, post)
        epochs = extract_epochs(df, starts, metrics, pre, post)
        z_epochs = zscore_epochs(epochs, baseline)
        return aggregate_epochs(z_epochs, metrics, pre, post)
