"""
PEM Pattern Analysis: command line entry point
===============================================
Reads normalized observation rows (JSON list of daily dicts) and prints the
full analysis digest.

Usage:
    python run_analysis.py observations.json
    python run_analysis.py observations.json --today 2024-03-01
    python run_analysis.py observations.json --experiment 2024-02-01:2024-02-29
    python run_analysis.py observations.json --polarity desirable
    python run_analysis.py observations.json --json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("run_analysis")

from config import load_config
from pipeline.analysis_report import run_full_analysis
from scoring import Polarity


def parse_experiment(raw: str, index: int) -> dict:
    """``START[:END]`` → experiment descriptor."""
    start, _, end = raw.partition(":")
    return {"id": f"exp{index + 1}", "name": raw, "start_date": start, "end_date": end or None}


def _jsonable(obj):
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, list):
        return [_jsonable(o) for o in obj]
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    return obj


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="PEM pattern analysis")
    parser.add_argument("observations", help="JSON file with a list of daily observation rows")
    parser.add_argument("--today", type=date.fromisoformat, default=None,
                        help="Reference day for danger scoring (default: today)")
    parser.add_argument("--experiment", action="append", default=[],
                        help="Experiment window START[:END], repeatable")
    parser.add_argument("--polarity", choices=[p.value for p in Polarity], default=Polarity.UNDESIRABLE.value,
                        help="Whether exertion counts against (undesirable) or for (desirable) you")
    parser.add_argument("--json", action="store_true",
                        help="Print the full report as JSON instead of the digest")
    args = parser.parse_args(argv)

    with open(args.observations, encoding="utf-8") as fh:
        rows = json.load(fh)
    if not isinstance(rows, list):
        log.error("%s must contain a JSON list of rows", args.observations)
        return 2

    experiments = [parse_experiment(raw, i) for i, raw in enumerate(args.experiment)]
    report = run_full_analysis(rows, today=args.today, experiments=experiments,
                               config=load_config(), polarity=args.polarity)

    if args.json:
        print(json.dumps(_jsonable(report), indent=2, default=str))
    else:
        print(report["summary"])
    return 1 if report["analysis_status"] == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
