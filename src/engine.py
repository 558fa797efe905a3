"""
Functional surface of the PEM pattern engine.

Every call is stateless: rows in (observation dicts or a loaded frame),
plain result objects out.  Scores are always recomputed from raw trackers
under the ``polarity`` passed to the call (default UNDESIRABLE).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Union

import pandas as pd

from analytics.baseline import Baseline, baseline_stats
from analytics.epochs import EpochPipeline, EpochProfile, crash_starts
from analytics.pem_phases import (
    CrashPhaseFindings,
    DiscoveredTrigger,
    PreCrashFindings,
    PreCrashPhaseAnalyzer,
    RecoveryPhaseFindings,
    analyze_crash_phase,
    analyze_recovery_phase,
)
from config import DEFAULT_CONFIG, AnalysisConfig
from correlation_engine import CorrelationEngine, CorrelationResult
from experiments import Experiment, ExperimentAnalyzer, ExperimentReport, ExperimentResult
from insights import (
    DEFAULT_IMPACT_METRIC,
    RecoveryVelocityEstimator,
    RecoveryVelocityResult,
    ThresholdDetector,
    ThresholdInsight,
)
from observations import Rows, numeric_metrics
from pem_danger import PEMDangerScorer, PemDangerStatus
from scoring import Polarity, enhance, ensure_scored

log = logging.getLogger("engine")

PolarityArg = Union[Polarity, str]


@dataclass
class TriggerDiscovery:
    baseline: Baseline
    discovered_triggers: List[DiscoveredTrigger] = field(default_factory=list)
    profile: Optional[EpochProfile] = None

    def to_dict(self) -> Dict:
        return {
            "baseline": {m: s.to_dict() for m, s in self.baseline.items()},
            "discovered_triggers": [t.to_dict() for t in self.discovered_triggers],
            "profile": self.profile.to_dict() if self.profile is not None else None,
        }


@dataclass
class PemCycleAnalysis:
    n_crashes: int
    pre_crash: PreCrashFindings
    crash: CrashPhaseFindings
    recovery: Optional[RecoveryPhaseFindings]

    def to_dict(self) -> Dict:
        return {
            "n_crashes": self.n_crashes,
            "pre_crash": self.pre_crash.to_dict(),
            "crash": self.crash.to_dict(),
            "recovery": self.recovery.to_dict() if self.recovery else None,
        }


def compute_scores(rows: Rows, polarity: PolarityArg = Polarity.UNDESIRABLE,
                   config: Optional[AnalysisConfig] = None) -> pd.DataFrame:
    cfg = config or DEFAULT_CONFIG
    return enhance(rows, polarity=polarity, categories=cfg.categories)


def _profile(rows: Rows, cfg: AnalysisConfig, polarity: PolarityArg):
    df = ensure_scored(rows, polarity, cfg.categories)
    metrics = numeric_metrics(df)
    baseline = baseline_stats(df, metrics)
    starts = crash_starts(df)
    if not starts:
        return df, baseline, None
    return df, baseline, EpochPipeline(cfg).run(df, starts, metrics, baseline)


def discover_triggers(rows: Rows, config: Optional[AnalysisConfig] = None,
                      polarity: PolarityArg = Polarity.UNDESIRABLE) -> TriggerDiscovery:
    """Baseline plus the pre-crash signatures found in the epoch profile."""
    cfg = config or DEFAULT_CONFIG
    _, baseline, profile = _profile(rows, cfg, polarity)
    if profile is None:
        log.info("   No crash flags in history, nothing to discover")
        return TriggerDiscovery(baseline=baseline)
    findings = PreCrashPhaseAnalyzer(cfg).analyze(profile, baseline)
    return TriggerDiscovery(baseline, findings.discoveries, profile)


def analyze_pem_cycle(rows: Rows, config: Optional[AnalysisConfig] = None,
                      polarity: PolarityArg = Polarity.UNDESIRABLE) -> Optional[PemCycleAnalysis]:
    """Buildup, crash and recovery phases; None without any crash."""
    cfg = config or DEFAULT_CONFIG
    df, baseline, profile = _profile(rows, cfg, polarity)
    if profile is None:
        return None
    return PemCycleAnalysis(
        n_crashes=profile.n_events,
        pre_crash=PreCrashPhaseAnalyzer(cfg).analyze(profile, baseline),
        crash=analyze_crash_phase(df, profile.epochs, baseline, cfg),
        recovery=analyze_recovery_phase(df, profile.epochs, baseline, cfg),
    )


def current_danger_status(rows: Rows, today: Optional[date] = None,
                          config: Optional[AnalysisConfig] = None,
                          polarity: PolarityArg = Polarity.UNDESIRABLE) -> PemDangerStatus:
    return PEMDangerScorer(config).evaluate(rows, today, polarity)


def correlate(rows: Rows, config: Optional[AnalysisConfig] = None,
              polarity: PolarityArg = Polarity.UNDESIRABLE) -> List[CorrelationResult]:
    cfg = config or DEFAULT_CONFIG
    return CorrelationEngine(cfg).compute(ensure_scored(rows, polarity, cfg.categories))


def detect_thresholds(rows: Rows, impact_metric: str = DEFAULT_IMPACT_METRIC,
                      trigger_metrics: Optional[Sequence[str]] = None,
                      config: Optional[AnalysisConfig] = None,
                      polarity: PolarityArg = Polarity.UNDESIRABLE) -> List[ThresholdInsight]:
    cfg = config or DEFAULT_CONFIG
    return ThresholdDetector(cfg).detect(ensure_scored(rows, polarity, cfg.categories),
                                         impact_metric, trigger_metrics)


def recovery_velocity(rows: Rows, outcome_metrics: Optional[Sequence[str]] = None,
                      config: Optional[AnalysisConfig] = None,
                      polarity: PolarityArg = Polarity.UNDESIRABLE) -> List[RecoveryVelocityResult]:
    cfg = config or DEFAULT_CONFIG
    return RecoveryVelocityEstimator(cfg).estimate(ensure_scored(rows, polarity, cfg.categories),
                                                   outcome_metrics)


def analyze_experiment(experiment: Experiment, rows: Rows, today: Optional[date] = None,
                       config: Optional[AnalysisConfig] = None,
                       polarity: PolarityArg = Polarity.UNDESIRABLE) -> Optional[ExperimentResult]:
    return ExperimentAnalyzer(config).analyze(experiment, rows, today, polarity)


def analyze_experiments(experiments: Sequence[Experiment], rows: Rows,
                        today: Optional[date] = None,
                        config: Optional[AnalysisConfig] = None,
                        polarity: PolarityArg = Polarity.UNDESIRABLE) -> List[ExperimentReport]:
    return ExperimentAnalyzer(config).analyze_many(experiments, rows, today, polarity)
