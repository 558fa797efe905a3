"""
Shared constants used across multiple modules.
Single source of truth for metric categories and metric directions.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional

# Bump when a category assignment changes meaning (not for added aliases).
METRIC_TABLE_VERSION = "2"

EXERTION = "exertion"
EXCLUDED = "excluded"
NONE = "none"

# Trackers summed into the exertion score.
EXERTION_METRICS = (
    "Cognitive Exertion", "Emotional Exertion", "Physical Exertion", "Social Exertion",
    # Short forms (legacy)
    "Cognitive", "Emotional", "Physical", "Social",
    # Visible CSV
    "Mentally demanding", "Emotionally stressful", "Physically active",
    "Socially demanding", "Work Exertion",
    # Bearable categories
    "Work", "Stress", "Video Calls", "Sociability level", "Activity level",
    "Social interaction",
    # German
    "Kognitive Anstrengung", "Emotionale Anstrengung",
    "Körperliche Anstrengung", "Soziale Anstrengung",
)

# Trackers that are never summed into the symptom score.
EXCLUDED_METRICS = (
    # Metadata
    "Menstrual Flow", "Note", "Tag",
    # Independent scores
    "Sleep", "Sleep Duration", "Sleep Quality", "Stability Score",
    "composite_score", "exertion_score", "symptom_score",
    # Standard vitals
    "HRV", "Resting HR", "Steps", "Step Count", "Infection",
    "hrv", "resting_heart_rate", "step_count",
    "Mood", "Energy", "Caffeine", "Weather",
    # Crash flag
    "Crash",
)

# Keys of the crash flag in raw observations (matched case-insensitively)
CRASH_KEYS = ("crash",)
CRASH_TRUE_VALUES = {1, 1.0, True, "1", "true", "yes"}

# Provider-selection fields carried on rows but never analysed
PROVIDER_FIELDS = {"symptom_provider", "step_provider"}

# Columns of a loaded observation frame that are not trackers
CORE_COLUMNS = ("date", "observed", "crash", "hrv", "resting_heart_rate", "step_count")
DERIVED_COLUMNS = (
    "symptom_score", "exertion_score", "composite_score",
    "normalized_hrv", "normalized_rhr", "normalized_steps",
    "normalized_exertion", "normalized_sleep",
)

# "higher" = higher is better, "lower" = lower is better.
# Unlisted trackers default to "lower" (symptoms).
METRIC_DIRECTIONS: Dict[str, str] = {
    "hrv": "higher",
    "steps": "higher",
    "step_count": "higher",
    "normalized_steps": "higher",
    "resting_heart_rate": "lower",
    "rhr": "lower",
    "composite_score": "lower",
    "adjusted_score": "lower",
    "symptom_score": "lower",
    "exertion_score": "lower",
    "sleep": "lower",
    "crash": "lower",
}

METRIC_LABELS: Dict[str, str] = {
    "hrv": "HRV",
    "resting_heart_rate": "Resting HR",
    "step_count": "Steps",
    "composite_score": "Composite Health Score",
    "symptom_score": "Symptom Score",
    "exertion_score": "Exertion",
}


class MetricCategoryTable:
    """Versioned mapping ``metric name -> exertion | excluded | none``.

    Lookups try the exact name first, then a case-insensitive match.  New
    provider aliases are added with :meth:`with_aliases`, which returns a
    new table and leaves this one untouched.
    """

    def __init__(self, categories: Dict[str, str], version: str = METRIC_TABLE_VERSION):
        for name, cat in categories.items():
            if cat not in (EXERTION, EXCLUDED):
                raise ValueError(f"Invalid category {cat!r} for metric {name!r}")
        self._exact = dict(categories)
        self._folded = {k.casefold(): v for k, v in categories.items()}
        self.version = version

    @classmethod
    def default(cls) -> "MetricCategoryTable":
        cats = {m: EXCLUDED for m in EXCLUDED_METRICS}
        cats.update({m: EXERTION for m in EXERTION_METRICS})
        return cls(cats)

    def with_aliases(self, exertion: Optional[Iterable[str]] = None,
                     excluded: Optional[Iterable[str]] = None) -> "MetricCategoryTable":
        cats = dict(self._exact)
        for name in excluded or ():
            cats[name] = EXCLUDED
        for name in exertion or ():
            cats[name] = EXERTION
        return MetricCategoryTable(cats, self.version)

    def category(self, metric: str) -> str:
        cat = self._exact.get(metric)
        if cat is None:
            cat = self._folded.get(str(metric).casefold(), NONE)
        return cat

    def is_exertion(self, metric: str) -> bool:
        return self.category(metric) == EXERTION

    def is_excluded(self, metric: str) -> bool:
        return self.category(metric) == EXCLUDED


DEFAULT_CATEGORIES = MetricCategoryTable.default()


def metric_direction(metric: str) -> str:
    """Return ``"higher"`` or ``"lower"`` (which way is better) for a metric."""
    return METRIC_DIRECTIONS.get(metric) or METRIC_DIRECTIONS.get(str(metric).lower(), "lower")


def metric_label(metric: str) -> str:
    if " + " in metric:
        return " + ".join(metric_label(m) for m in metric.split(" + "))
    return METRIC_LABELS.get(metric, metric.replace("_", " "))
