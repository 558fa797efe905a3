"""
Shared test configuration.

Adds src/ to sys.path so the flat modules (scoring, correlation_engine,
pem_danger, ...) import with a plain ``import module_name``, and provides
the synthetic histories several test modules share.
"""

import os
import sys
from datetime import date, timedelta

import pytest

_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_src_dir = os.path.join(_project_root, "src")

if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)


START = date(2024, 1, 1)

# Crash days of the synthetic history; steps spike two days before each
CRASH_DAYS = (20, 40)
SPIKE_DAYS = (18, 38)
HISTORY_DAYS = 60


def day(i: int) -> date:
    return START + timedelta(days=i)


def crash_history(spike_today: bool = True):
    """60 days: 3000 steps, Fatigue 5; step spike two days before each crash.

    With ``spike_today`` the last day repeats the spike.
    """
    spikes = set(SPIKE_DAYS)
    if spike_today:
        spikes.add(HISTORY_DAYS - 1)
    rows = []
    for i in range(HISTORY_DAYS):
        rows.append({
            "date": day(i).isoformat(),
            "step_count": 12000 if i in spikes else 3000,
            "custom_metrics": {
                "Fatigue": 8 if i in CRASH_DAYS else 5,
                "Crash": 1 if i in CRASH_DAYS else 0,
            },
        })
    return rows


@pytest.fixture
def spike_history():
    return crash_history(spike_today=True)


@pytest.fixture
def calm_history():
    return crash_history(spike_today=False)


@pytest.fixture
def last_day():
    return day(HISTORY_DAYS - 1)
