"""Analysis thresholds, loaded from the environment / .env.

Every tunable z-score, p-value and sample-size cut-off used by the engine
lives in :class:`AnalysisConfig`.  Modules take an optional ``config``
argument and fall back to :data:`DEFAULT_CONFIG`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Optional, Tuple

from dotenv import load_dotenv

from constants import DEFAULT_CATEGORIES, MetricCategoryTable

ENV_PREFIX = "PEM_"


@dataclass(frozen=True)
class AnalysisConfig:
    # Epoch window (days around crash start)
    epoch_pre_days: int = 7
    epoch_post_days: int = 14

    # Pre-crash trigger discovery
    trigger_z: float = 1.5
    synergy_z: float = 1.65
    max_discoveries: int = 5

    # Live danger scoring
    min_history_rows: int = 10
    recent_window_days: int = 7
    match_ratio: float = 0.75
    cumulative_load_z: float = 0.8
    danger_level: float = 50.0
    max_matched_triggers: int = 3

    # Biometric reassurance bands
    biometric_optimal_z: float = 0.5
    biometric_strained_z: float = 1.0

    # Correlations
    min_correlation_rows: int = 10
    min_aligned_points: int = 5
    max_lag: int = 2
    significance_p: float = 0.05
    trend_p: float = 0.15

    # Threshold (safe zone) detection
    min_threshold_pairs: int = 10
    threshold_buckets: int = 4
    threshold_jump_ratio: float = 1.5

    # Recovery velocity
    spike_std: float = 1.5
    recovery_scan_days: int = 7
    recovery_cap_days: int = 8
    min_recovery_spikes: int = 2
    recovery_full_confidence: int = 5

    # Experiments
    min_experiment_samples: int = 3
    experiment_change_pct: float = 5.0

    # Extra provider aliases, added on top of the built-in category table
    extra_exertion_metrics: Tuple[str, ...] = ()
    extra_excluded_metrics: Tuple[str, ...] = ()

    categories: MetricCategoryTable = field(default=DEFAULT_CATEGORIES, compare=False, repr=False)

    def __post_init__(self):
        if self.epoch_pre_days < 1 or self.epoch_post_days < 0:
            raise ValueError("Epoch window must include at least one pre-crash day")
        if not 0 < self.match_ratio <= 1:
            raise ValueError(f"match_ratio must be in (0, 1], got {self.match_ratio}")
        if not 0 < self.significance_p <= self.trend_p < 1:
            raise ValueError("Need 0 < significance_p <= trend_p < 1")
        if self.threshold_buckets < 3:
            raise ValueError("threshold_buckets must be >= 3")
        if self.min_aligned_points < 3:
            raise ValueError("min_aligned_points must be >= 3")
        if self.extra_exertion_metrics or self.extra_excluded_metrics:
            table = self.categories.with_aliases(
                exertion=self.extra_exertion_metrics,
                excluded=self.extra_excluded_metrics,
            )
            object.__setattr__(self, "categories", table)


DEFAULT_CONFIG = AnalysisConfig()


def _parse(raw: str, current):
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, tuple):
        return tuple(p.strip() for p in raw.split(",") if p.strip())
    return raw


def load_config(env_file: Optional[str] = None, **overrides) -> AnalysisConfig:
    """Build a config from ``PEM_<FIELD>`` environment variables.

    ``PEM_TRIGGER_Z=1.2`` overrides ``trigger_z``;
    ``PEM_EXTRA_EXERTION_METRICS="Gardening, Hausarbeit"`` adds aliases.
    Keyword overrides win over the environment.
    """
    load_dotenv(env_file)
    values = {}
    for f in fields(AnalysisConfig):
        if f.name == "categories":
            continue
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is None or raw == "":
            continue
        try:
            values[f.name] = _parse(raw, getattr(DEFAULT_CONFIG, f.name))
        except ValueError as e:
            raise ValueError(f"Invalid value for {ENV_PREFIX + f.name.upper()}: {raw!r}") from e
    values.update(overrides)
    return replace(DEFAULT_CONFIG, **values) if values else DEFAULT_CONFIG
