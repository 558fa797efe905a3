"""
PEM cycle phase analysis on top of the aggregated epoch profile.

Phase 1 - Buildup (pre-crash triggers):
    Scan the strictly negative offsets of every metric's averaged z-curve.
    A metric whose |z| exceeds ``trigger_z`` at some pre-crash offset is a
    discovered trigger.  Pairs of metrics are scanned as well with the
    joint score

        z_joint = (z_a + z_b) / √2

    which assumes the two metrics are independent.  A pair only counts when
    the joint score beats both members on their own.

Phase 2 - Crash (duration and peak deviations per episode).
Phase 3 - Recovery tail (days until each metric is back within 0.5σ after
the user stops logging the crash).
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from analytics.baseline import Baseline
from analytics.epochs import Epoch, EpochProfile
from config import DEFAULT_CONFIG, AnalysisConfig
from constants import EXCLUDED, EXERTION
from observations import finite_dict

log = logging.getLogger("pem_phases")

SPIKE = "spike"
DROP = "drop"

# Phase 2/3 cut-offs
STRESSED_Z = 1.0
CRASH_DISCOVERY_Z = 1.3
EXTENDING_Z = 1.5
RECOVERED_Z = 0.5
SHORT_EPISODE_DAYS = 3

VITAL_METRICS = ("hrv", "resting_heart_rate")
COMPOSITE_INPUTS = VITAL_METRICS + ("step_count", "symptom_score", "exertion_score")


@dataclass
class DiscoveredTrigger:
    metric: str
    type: str
    lead_days_start: int
    lead_days_end: int
    magnitude: float
    pct_change: float
    classification: str

    @property
    def is_synergistic(self) -> bool:
        return " + " in self.metric

    @property
    def members(self) -> List[str]:
        return self.metric.split(" + ")

    def to_dict(self):
        return finite_dict(asdict(self))


@dataclass
class PreCrashFindings:
    discoveries: List[DiscoveredTrigger]
    delayed_trigger_detected: bool
    cumulative_load_detected: bool
    trigger_lag: Optional[int]
    confidence: float

    def to_dict(self):
        d = finite_dict(asdict(self))
        d["discoveries"] = [t.to_dict() for t in self.discoveries]
        return d


def classify_trigger(trigger_type: str, lead: int, synergistic: bool = False) -> str:
    kind = "Spike" if trigger_type == SPIKE else "Drop"
    if synergistic:
        return f"Synergistic {kind}"
    return f"{'Acute' if lead >= -1 else 'Delayed'} {kind}"


def _pct_change(z: float, metric: str, baseline: Baseline) -> float:
    stat = baseline.get(metric)
    if stat is None:
        return 0.0
    # Denominator floored at 1
    denom = max(abs(stat.mean), 1.0)
    return z * stat.std / denom * 100


def _is_flag(metric: str) -> bool:
    return metric.lower() == "crash"


def _shares_source(m1: str, m2: str, config: AnalysisConfig) -> bool:
    """True when one metric is a score computed from the other."""
    for derived, other in ((m1, m2), (m2, m1)):
        if derived == "composite_score" and (
            other in COMPOSITE_INPUTS
            or str(other).casefold() == "sleep"
            or not config.categories.is_excluded(other)
        ):
            return True
        if derived == "exertion_score" and config.categories.is_exertion(other):
            return True
        if derived == "symptom_score" and _is_symptom(other, config):
            return True
    return False


class PreCrashPhaseAnalyzer:
    """Mines the pre-crash part of the epoch profile for triggers."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def analyze(self, profile: EpochProfile, baseline: Baseline) -> PreCrashFindings:
        cfg = self.config
        pre = profile.mean.loc[profile.mean.index < 0].sort_index()
        metrics = [m for m in pre.columns if not _is_flag(m)]

        solo: List[DiscoveredTrigger] = []
        for m in metrics:
            curve = pre[m]
            sig = curve[curve.abs() > cfg.trigger_z]
            if sig.empty:
                continue
            peak_off = int(sig.abs().idxmax())
            peak_z = float(curve.loc[peak_off])
            ttype = SPIKE if peak_z > 0 else DROP
            solo.append(DiscoveredTrigger(
                metric=m,
                type=ttype,
                lead_days_start=peak_off,
                lead_days_end=int(sig.index.max()),
                magnitude=abs(peak_z),
                pct_change=_pct_change(peak_z, m, baseline),
                classification=classify_trigger(ttype, peak_off),
            ))

        pairs: List[DiscoveredTrigger] = []
        for i, m1 in enumerate(metrics):
            z1 = pre[m1]
            if z1.isna().all():
                continue
            for m2 in metrics[i + 1:]:
                if _shares_source(m1, m2, cfg):
                    continue
                z2 = pre[m2]
                joint = (z1 + z2) / math.sqrt(2)
                synergistic = joint.abs() > np.maximum(z1.abs(), z2.abs())
                sig = joint[(joint.abs() > cfg.synergy_z) & synergistic]
                if sig.empty:
                    continue
                peak_off = int(sig.abs().idxmax())
                peak_z = float(joint.loc[peak_off])
                ttype = SPIKE if peak_z > 0 else DROP
                pct = (_pct_change(float(z1.loc[peak_off]), m1, baseline)
                       + _pct_change(float(z2.loc[peak_off]), m2, baseline)) / 2
                pairs.append(DiscoveredTrigger(
                    metric=f"{m1} + {m2}",
                    type=ttype,
                    lead_days_start=peak_off,
                    lead_days_end=int(sig.index.max()),
                    magnitude=abs(peak_z),
                    pct_change=pct,
                    classification=classify_trigger(ttype, peak_off, synergistic=True),
                ))

        discoveries = sorted(solo + pairs, key=lambda t: t.magnitude, reverse=True)
        discoveries = discoveries[:cfg.max_discoveries]
        log.info("   Pre-crash: %d solo, %d synergistic -> kept %d",
                 len(solo), len(pairs), len(discoveries))

        exertion_spike = next(
            (t for t in discoveries if "exertion_score" in t.members and t.type == SPIKE), None
        )
        cumulative = 0.0
        if "exertion_score" in pre.columns:
            window = pre.loc[pre.index >= -5, "exertion_score"]
            cumulative = float(window.fillna(0.0).sum() / 5)
        cumulative_detected = cumulative > 0.5

        if exertion_spike is not None:
            lag, confidence = exertion_spike.lead_days_start, 0.8
        elif cumulative_detected:
            lag, confidence = None, 0.6
        else:
            lag, confidence = None, 0.0

        return PreCrashFindings(
            discoveries=discoveries,
            delayed_trigger_detected=exertion_spike is not None,
            cumulative_load_detected=cumulative_detected,
            trigger_lag=lag,
            confidence=confidence,
        )


# ─── Phase 2: the crash itself ───────────────────────────────


@dataclass
class CrashPhaseFindings:
    type: str
    avg_logged_duration: float
    avg_physiological_duration: float
    discoveries: List[Dict] = field(default_factory=list)
    extending_metrics: List[str] = field(default_factory=list)

    def to_dict(self):
        return finite_dict(asdict(self))


def _crash_labels(df: pd.DataFrame, start: int, post: int) -> List[bool]:
    end = min(len(df), start + post + 1)
    return [bool(v) for v in df["crash"].iloc[start:end]]


def analyze_crash_phase(df: pd.DataFrame, epochs: Sequence[Epoch], baseline: Baseline,
                        config: Optional[AnalysisConfig] = None) -> CrashPhaseFindings:
    """Duration and peak deviation of each crash episode."""
    cfg = config or DEFAULT_CONFIG
    metrics = [m for m in baseline if not _is_flag(m)]
    episodes = []
    for ep in epochs:
        labels = _crash_labels(df, ep.start_index, cfg.epoch_post_days)
        z = ep.zscores.reindex(columns=metrics)
        logged = phys = 0
        peaks: Dict[str, float] = {}

        def stressed(offset):
            row = z.loc[offset] if offset in z.index else None
            return row is not None and bool((row.abs() > STRESSED_Z).any())

        for i, labeled in enumerate(labels):
            is_stressed = stressed(i)
            logged += labeled
            if labeled or is_stressed:
                phys += 1
            for m in metrics:
                val = z.at[i, m]
                if not np.isnan(val) and abs(val) > abs(peaks.get(m, 0.0)):
                    peaks[m] = float(val)
            if i > 0 and not labeled and not is_stressed:
                next_labeled = labels[i + 1] if i + 1 < len(labels) else False
                if i + 1 >= len(labels) or (not next_labeled and not stressed(i + 1)):
                    break
        episodes.append((logged, phys, peaks))

    if not episodes:
        return CrashPhaseFindings("Mixed", 0.0, 0.0)

    n = len(episodes)
    avg_logged = sum(e[0] for e in episodes) / n
    avg_phys = sum(e[1] for e in episodes) / n

    discoveries = []
    for m in metrics:
        avg_peak = sum(e[2].get(m, 0.0) for e in episodes) / n
        if abs(avg_peak) > CRASH_DISCOVERY_Z:
            discoveries.append({
                "metric": m,
                "type": SPIKE if avg_peak > 0 else DROP,
                "magnitude": abs(avg_peak),
                "pct_change": _pct_change(avg_peak, m, baseline),
            })
    discoveries.sort(key=lambda d: d["magnitude"], reverse=True)

    extending = []
    if avg_phys > avg_logged:
        for m in metrics:
            count = sum(1 for e in episodes if abs(e[2].get(m, 0.0)) > EXTENDING_Z)
            if count > n * 0.5:
                extending.append(m)

    ep_type = "Dip (Short Episode)" if avg_logged < SHORT_EPISODE_DAYS else "Burnout (Long Episode)"
    return CrashPhaseFindings(
        type=ep_type,
        avg_logged_duration=avg_logged,
        avg_physiological_duration=avg_phys,
        discoveries=discoveries[:5],
        extending_metrics=extending[:3],
    )


# ─── Phase 3: recovery tail ──────────────────────────────────


@dataclass
class RecoveryPhaseFindings:
    avg_symptom_recovery_tail: float
    avg_biological_recovery_tail: float
    hysteresis_gap: float
    slowest_recoverers: List[str]
    metric_averages: Dict[str, float] = field(default_factory=dict)

    def to_dict(self):
        return finite_dict(asdict(self))


def _is_symptom(metric: str, config: AnalysisConfig) -> bool:
    if metric in ("composite_score", "symptom_score"):
        return True
    if metric in VITAL_METRICS or metric in ("step_count", "exertion_score"):
        return False
    return config.categories.category(metric) not in (EXERTION, EXCLUDED)


def analyze_recovery_phase(df: pd.DataFrame, epochs: Sequence[Epoch], baseline: Baseline,
                           config: Optional[AnalysisConfig] = None) -> Optional[RecoveryPhaseFindings]:
    """Days from the last logged crash day until each metric is back near baseline."""
    cfg = config or DEFAULT_CONFIG
    if not epochs:
        return None
    post = cfg.epoch_post_days
    metrics = [m for m in baseline if not _is_flag(m)]

    per_episode = []
    for ep in epochs:
        labels = _crash_labels(df, ep.start_index, post)
        exit_day = 0
        for i, labeled in enumerate(labels):
            if labeled:
                exit_day = i + 1
            elif exit_day > 0 and i > exit_day:
                break

        z = ep.zscores.reindex(columns=metrics)
        stats = {}
        for m in metrics:
            days = post - exit_day
            for i in range(exit_day, min(post, len(labels) - 1) + 1):
                val = z.at[i, m]
                if not np.isnan(val) and abs(val) < RECOVERED_Z:
                    days = i - exit_day
                    break
            stats[m] = days
        per_episode.append(stats)

    averages = {m: sum(s[m] for s in per_episode) / len(per_episode) for m in metrics}

    symptom_tails = [averages[m] for m in metrics if _is_symptom(m, cfg)]
    vital_tails = [averages[m] for m in metrics if m in VITAL_METRICS]
    avg_symptom = sum(symptom_tails) / len(symptom_tails) if symptom_tails else 0.0
    avg_vital = sum(vital_tails) / len(vital_tails) if vital_tails else 0.0

    slowest = [m for m, v in sorted(averages.items(), key=lambda kv: kv[1], reverse=True)[:3]
               if v > 0.5]

    return RecoveryPhaseFindings(
        avg_symptom_recovery_tail=avg_symptom,
        avg_biological_recovery_tail=avg_vital,
        hysteresis_gap=max(0.0, avg_vital - avg_symptom),
        slowest_recoverers=slowest,
        metric_averages=averages,
    )
