"""
Observation frame building.

Turns the normalized daily rows handed over by the ingestion layer into the
single DataFrame layout every analysis works on:

  * one row per calendar day, sorted, with gaps filled by NaN rows
    (``observed == False``) so index offsets equal day offsets,
  * ``custom_metrics`` flattened into one column per tracker,
  * the crash flag normalized once into a boolean ``crash`` column.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from constants import (
    CORE_COLUMNS, CRASH_KEYS, CRASH_TRUE_VALUES, DERIVED_COLUMNS, PROVIDER_FIELDS,
)

log = logging.getLogger("observations")

Rows = Union[pd.DataFrame, Iterable[Mapping[str, Any]]]

_VITALS = ("hrv", "resting_heart_rate", "step_count")
_RESERVED = {"date", "id", "user_id", "created_at", "raw_data", "custom_metrics"}


def to_number(val: Any) -> Optional[float]:
    """Coerce a raw value to float; None for anything non-numeric or NaN."""
    if val is None:
        return None
    if isinstance(val, bool):
        return float(val)
    if isinstance(val, (int, float, np.integer, np.floating)):
        f = float(val)
        return None if math.isnan(f) or math.isinf(f) else f
    if isinstance(val, str):
        try:
            f = float(val.strip())
        except ValueError:
            return None
        return None if math.isnan(f) or math.isinf(f) else f
    return None


def is_crash_value(val: Any) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in CRASH_TRUE_VALUES
    try:
        return val in CRASH_TRUE_VALUES
    except TypeError:
        return False


def _parse_date(val: Any) -> date:
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if isinstance(val, pd.Timestamp):
        return val.date()
    if isinstance(val, str):
        # Raises ValueError on malformed input
        return date.fromisoformat(val.strip()[:10])
    raise ValueError(f"Unsupported date value: {val!r}")


def _flatten(row: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"date": _parse_date(row.get("date")), "crash": False}
    custom = row.get("custom_metrics") or {}
    if not isinstance(custom, Mapping):
        custom = {}

    for source in (custom, row):
        for key, val in source.items():
            if key in _RESERVED or key in PROVIDER_FIELDS:
                continue
            if str(key).lower() in CRASH_KEYS:
                out["crash"] = out["crash"] or is_crash_value(val)
                continue
            if str(key).startswith("normalized_") or key in DERIVED_COLUMNS:
                # Derived scores are always recomputed from raw trackers
                continue
            num = to_number(val)
            # Top-level value wins when both exist
            if key not in out or (num is not None and (source is row or out[key] is None)):
                out[key] = num
    for v in _VITALS:
        out.setdefault(v, None)
    return out


def load_observations(rows: Rows, fill_gaps: bool = True) -> pd.DataFrame:
    """Build the analysis frame from observation rows.

    Accepts a list of dicts (``date``, ``hrv``, ``resting_heart_rate``,
    ``step_count``, ``custom_metrics``, optional ``crash``) or a frame that
    was already loaded, which is returned as a copy.

    Raises ValueError on duplicate or malformed dates.
    """
    if isinstance(rows, pd.DataFrame):
        if "observed" in rows.columns:
            return rows.copy()
        rows = rows.to_dict("records")

    records = [_flatten(r) for r in rows]
    if not records:
        return pd.DataFrame(columns=list(CORE_COLUMNS))

    df = pd.DataFrame.from_records(records)
    df["date"] = pd.to_datetime(df["date"])
    dupes = df["date"][df["date"].duplicated()]
    if not dupes.empty:
        raise ValueError(f"Duplicate observation dates: {sorted({d.date().isoformat() for d in dupes})}")

    df = df.sort_values("date").reset_index(drop=True)
    df["observed"] = True

    tracker_cols = [c for c in df.columns if c not in CORE_COLUMNS]
    for c in list(_VITALS) + tracker_cols:
        df[c] = pd.to_numeric(df[c], errors="coerce").astype(float)
    df["crash"] = df["crash"].fillna(False).astype(bool)

    if fill_gaps and len(df) > 1:
        n_before = len(df)
        df = df.set_index("date").asfreq("D").reset_index()
        df["observed"] = df["observed"].fillna(False).astype(bool)
        df["crash"] = df["crash"].fillna(False).astype(bool)
        n_filled = len(df) - n_before
        if n_filled > 0:
            log.info("   Inserted %d gap-fill rows for date continuity", n_filled)

    ordered = [c for c in CORE_COLUMNS] + [c for c in df.columns if c not in CORE_COLUMNS]
    return df[ordered]


def tracker_columns(df: pd.DataFrame) -> List[str]:
    """Raw named trackers (everything that is neither core nor derived)."""
    skip = set(CORE_COLUMNS) | set(DERIVED_COLUMNS)
    return [c for c in df.columns if c not in skip]


def numeric_metrics(df: pd.DataFrame) -> List[str]:
    """All analysable numeric metrics present anywhere in the frame."""
    skip = {"date", "observed", "crash"} | PROVIDER_FIELDS
    out = []
    for c in df.columns:
        if c in skip or "normalized" in str(c).lower():
            continue
        if not pd.api.types.is_numeric_dtype(df[c]) or pd.api.types.is_bool_dtype(df[c]):
            continue
        if df[c].notna().any():
            out.append(c)
    return out


def observed_count(df: pd.DataFrame) -> int:
    if df.empty:
        return 0
    return int(df["observed"].sum()) if "observed" in df.columns else len(df)


def value_at(df: pd.DataFrame, idx: int, metric: str) -> Optional[float]:
    """Value of ``metric`` on row ``idx``; None when missing."""
    if metric not in df.columns or idx < 0 or idx >= len(df):
        return None
    val = df[metric].iat[idx]
    if val is None or (isinstance(val, float) and math.isnan(val)):
        return None
    return float(val)


def finite_dict(obj: Any) -> Any:
    """Result payload with every NaN / inf float replaced by None."""
    if isinstance(obj, dict):
        return {k: finite_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [finite_dict(v) for v in obj]
    if isinstance(obj, (float, np.floating)):
        f = float(obj)
        return None if math.isnan(f) or math.isinf(f) else f
    return obj
