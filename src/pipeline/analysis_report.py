"""Run every analysis over one history and collect a status-tagged report."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from config import DEFAULT_CONFIG, AnalysisConfig
from engine import (
    analyze_experiment,
    analyze_experiments,
    analyze_pem_cycle,
    correlate,
    current_danger_status,
    detect_thresholds,
    discover_triggers,
    recovery_velocity,
)
from experiments import Experiment
from observations import Rows, observed_count
from scoring import Polarity, ensure_scored, resolve_polarity

log = logging.getLogger("analysis_report")

MAX_SUMMARY_CORRELATIONS = 8


def _step(name: str, fn: Callable[[], Any], status: Dict[str, Any]):
    status["steps"] += 1
    try:
        return fn()
    except Exception:
        log.exception("%s failed", name)
        status["degraded_reasons"].append(f"{name}_exception")
        return None


def run_full_analysis(rows: Rows, today: Optional[date] = None,
                      experiments: Optional[Sequence[Experiment]] = None,
                      config: Optional[AnalysisConfig] = None,
                      polarity: Union[Polarity, str] = Polarity.UNDESIRABLE) -> Dict[str, Any]:
    """Execute all analyses and return results plus machine-readable status.

    Every analysis scores the history under the same ``polarity``.
    A failing analysis is logged and downgrades ``analysis_status`` to
    ``degraded``; nothing usable at all gives ``failed``.
    """
    cfg = config or DEFAULT_CONFIG
    polarity = resolve_polarity(polarity)
    status: Dict[str, Any] = {"analysis_status": "unknown", "degraded_reasons": [], "steps": 0}
    results: Dict[str, Any] = {}

    log.info("=" * 60)
    log.info("  PEM ANALYSIS STARTED (polarity=%s)", polarity.value)
    log.info("=" * 60)

    try:
        df = ensure_scored(rows, polarity, cfg.categories)
    except ValueError as e:
        log.error("Could not load observations: %s", e)
        return {
            "analysis_status": "failed",
            "degraded_reasons": ["invalid_observations"],
            "results": {},
            "summary": build_summary({}),
        }

    results["days"] = observed_count(df)
    results["polarity"] = polarity.value
    log.info("Step 1/6: Discovering pre-crash triggers...")
    results["triggers"] = _step("triggers", lambda: discover_triggers(df, cfg, polarity), status)
    results["pem_cycle"] = _step("pem_cycle", lambda: analyze_pem_cycle(df, cfg, polarity), status)

    log.info("Step 2/6: Scoring current danger...")
    results["danger"] = _step("danger", lambda: current_danger_status(df, today, cfg, polarity), status)

    log.info("Step 3/6: Computing correlations...")
    results["correlations"] = _step("correlations", lambda: correlate(df, cfg, polarity), status)

    log.info("Step 4/6: Detecting safe-zone thresholds...")
    results["thresholds"] = _step(
        "thresholds", lambda: detect_thresholds(df, config=cfg, polarity=polarity), status
    )

    log.info("Step 5/6: Estimating recovery velocity...")
    results["recovery"] = _step(
        "recovery", lambda: recovery_velocity(df, config=cfg, polarity=polarity), status
    )

    if experiments:
        log.info("Step 6/6: Analyzing %d experiments...", len(experiments))
        results["experiments"] = [
            _step("experiment", lambda e=e: analyze_experiment(e, df, today, cfg, polarity), status)
            for e in experiments
        ]
        results["experiment_impacts"] = _step(
            "experiment_ols", lambda: analyze_experiments(experiments, df, today, cfg, polarity), status
        )
    else:
        log.info("Step 6/6: Experiments SKIPPED (none given)")

    if len(status["degraded_reasons"]) >= status.pop("steps"):
        status["analysis_status"] = "failed"
    elif status["degraded_reasons"]:
        status["analysis_status"] = "degraded"
        log.warning("Analysis degraded: %s", ", ".join(status["degraded_reasons"]))
    else:
        status["analysis_status"] = "success"

    log.info("=" * 60)
    log.info("  PEM ANALYSIS COMPLETE (status=%s)", status["analysis_status"])
    log.info("=" * 60)
    return {**status, "results": results, "summary": build_summary(results)}


def _section(title: str, lines: List[str]) -> List[str]:
    return [f"[{title}]"] + (lines or ["  (none)"]) + [""]


def build_summary(results: Dict[str, Any]) -> str:
    """Plain-text digest with one bracketed section per analysis."""
    if not results or not results.get("days"):
        return "Insufficient data: no observed days."

    head = f"Observed days: {results['days']}"
    if results.get("polarity"):
        head += f" (exertion {results['polarity']})"
    out = [head, ""]

    danger = results.get("danger")
    if danger is not None:
        head = f"  status={danger.status} level={danger.level:.0f}"
        if danger.insufficient_data_reason:
            head += f" ({danger.insufficient_data_reason})"
        lines = [head]
        lines += [f"  - {m.type}: {m.metric} (score {m.score:.0f})" for m in danger.matched_triggers]
        for b in danger.biometrics or []:
            lines.append(f"  - {b.label}: {b.status} (z={b.z_score:+.2f})")
        out += _section("PEM DANGER", lines)

    triggers = results.get("triggers")
    if triggers is not None:
        out += _section("DISCOVERED TRIGGERS", [
            f"  - {t.classification}: {t.metric} at day {t.lead_days_start} "
            f"(|z|={t.magnitude:.2f}, {t.pct_change:+.0f}%)"
            for t in triggers.discovered_triggers
        ])

    cycle = results.get("pem_cycle")
    if cycle is not None:
        lines = [
            f"  crashes={cycle.n_crashes} type={cycle.crash.type}",
            f"  logged {cycle.crash.avg_logged_duration:.1f} days, "
            f"physiological {cycle.crash.avg_physiological_duration:.1f} days",
        ]
        if cycle.recovery is not None:
            lines.append(f"  hysteresis gap {cycle.recovery.hysteresis_gap:.1f} days, "
                         f"slowest: {', '.join(cycle.recovery.slowest_recoverers) or 'n/a'}")
        out += _section("PEM CYCLE", lines)

    corrs = results.get("correlations")
    if corrs is not None:
        notable = [c for c in corrs if c.significance != "not_significant"][:MAX_SUMMARY_CORRELATIONS]
        out += _section("CORRELATIONS", [
            f"  - {c.metric_a} -> {c.metric_b} (lag {c.lag}): r={c.coefficient:+.2f} "
            f"p={c.p_value:.3f} n={c.sample_size} [{c.significance}]"
            for c in notable
        ])

    thresholds = results.get("thresholds")
    if thresholds is not None:
        out += _section("SAFE ZONES", [f"  - {t.description}" for t in thresholds])

    recovery = results.get("recovery")
    if recovery is not None:
        out += _section("RECOVERY VELOCITY", [
            f"  - {r.metric} -> {r.outcome_metric}: {r.recovery_days:.1f} days "
            f"({r.sample_count} spikes, confidence {r.confidence:.0%})"
            for r in recovery
        ])

    exps = results.get("experiments")
    if exps is not None:
        lines = []
        for r in exps:
            if r is None:
                lines.append("  - insufficient data")
                continue
            verdict = "improved" if r.improved else "worsened"
            sig = "significant" if r.is_significant else "not significant"
            lines.append(f"  - {r.experiment_id or 'experiment'}: {r.metric_name} "
                         f"{r.baseline_mean:.1f} -> {r.treatment_mean:.1f} "
                         f"({r.change_percent:+.1f}%, {verdict}, {sig})")
        out += _section("EXPERIMENTS", lines)

    return "\n".join(out).rstrip() + "\n"
