"""
Table-shaped summaries in the host's generic result layout::

    {"key": ..., "title": ..., "columnHeaders": [{"header", "key"}],
     "rows": [{"rowHeader": [...], <column key>: value, ...}]}

Percentages are rounded for display here; the engines keep full precision.
"""
import re
from typing import Any, Dict, List, Optional, Sequence

from messages import DuplicateResult, FrequencyRow, VariableFrequencyResult

PERCENT_DECIMALS = 1

FREQUENCY_COLUMNS = [
    {"header": "", "key": "rowHeader"},
    {"header": "Frequency", "key": "frequency"},
    {"header": "Percent", "key": "percent"},
    {"header": "Valid Percent", "key": "validPercent"},
    {"header": "Cumulative Percent", "key": "cumulativePercent"},
]


def _table_key(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (title or "").strip().lower()).strip("_")


def _round(x: Optional[float]) -> Optional[float]:
    return None if x is None else round(x, PERCENT_DECIMALS)


def _row(section: str, label: str, freq: int, pct: float,
         valid_pct: Optional[float] = None, cum_pct: Optional[float] = None) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "rowHeader": [section, label],
        "frequency": freq,
        "percent": _round(pct),
    }
    if valid_pct is not None:
        row["validPercent"] = _round(valid_pct)
    if cum_pct is not None:
        row["cumulativePercent"] = _round(cum_pct)
    return row


def frequency_rows_table(title: str, valid_rows: Sequence[FrequencyRow],
                         missing_rows: Sequence[FrequencyRow], total_n: int) -> Dict[str, Any]:
    valid_n = sum(r.frequency for r in valid_rows)
    missing_n = sum(r.frequency for r in missing_rows)
    rows: List[Dict[str, Any]] = []

    for r in valid_rows:
        rows.append(_row("Valid", r.label, r.frequency, r.percent_of_total,
                         r.percent_of_valid, r.cumulative_percent))
    if valid_rows:
        rows.append(_row("Valid", "Total", valid_n, valid_n / total_n * 100.0 if total_n else 0.0,
                         100.0 if valid_n else 0.0))

    for r in missing_rows:
        rows.append(_row("Missing", r.label, r.frequency, r.percent_of_total))
    if missing_rows:
        rows.append(_row("Missing", "Total", missing_n, missing_n / total_n * 100.0 if total_n else 0.0))

    rows.append({"rowHeader": ["Total", ""], "frequency": total_n, "percent": 100.0 if total_n else 0.0})

    return {
        "key": _table_key(title),
        "title": title,
        "columnHeaders": FREQUENCY_COLUMNS,
        "rows": rows,
    }


def frequency_table(result: VariableFrequencyResult) -> Dict[str, Any]:
    return frequency_rows_table(result.variable_label, result.valid_rows, result.missing_rows, result.total_n)


def statistics_table(results: Sequence[VariableFrequencyResult]) -> Dict[str, Any]:
    """N valid / N missing / Mode / Percentiles, one column per variable.

    Columns are keyed by position, so variables sharing a name keep their
    own cells.
    """
    keys = [f"var{i}" for i in range(len(results))]
    columns = [{"header": "", "key": "rowHeader"}]
    columns += [{"header": r.variable_label, "key": k} for k, r in zip(keys, results)]

    n_valid: Dict[str, Any] = {"rowHeader": ["N", "Valid"]}
    n_missing: Dict[str, Any] = {"rowHeader": ["N", "Missing"]}
    mode: Dict[str, Any] = {"rowHeader": ["Mode", ""]}
    percentile_rows: Dict[int, Dict[str, Any]] = {}
    for k, r in zip(keys, results):
        n_valid[k] = r.valid_n
        n_missing[k] = r.missing_n
        labels = {row.value: row.label for row in r.valid_rows}
        mode[k] = ", ".join(labels.get(v, str(v)) for v in r.mode)
        for pct in r.percentiles or []:
            row = percentile_rows.setdefault(pct.percent, {"rowHeader": ["Percentiles", str(pct.percent)]})
            row[k] = "" if pct.value is None else pct.value

    rows = [n_valid, n_missing, mode]
    for p in sorted(percentile_rows):
        row = percentile_rows[p]
        for k in keys:
            row.setdefault(k, "")
        rows.append(row)

    return {
        "key": "statistics",
        "title": "Statistics",
        "columnHeaders": columns,
        "rows": rows,
    }


def duplicate_summary_table(result: DuplicateResult) -> Dict[str, Any]:
    n_cases = len(result.primary_values)
    n_primary = sum(result.primary_values)
    rows = [
        {"rowHeader": ["Matching groups"], "count": result.total_groups},
        {"rowHeader": ["Duplicate cases"], "count": result.total_duplicates},
        {"rowHeader": ["Primary cases"], "count": n_primary},
        {"rowHeader": ["Total cases"], "count": n_cases},
    ]
    return {
        "key": "duplicate_cases_summary",
        "title": "Duplicate Cases Summary",
        "columnHeaders": [{"header": "", "key": "rowHeader"}, {"header": "N", "key": "count"}],
        "rows": rows,
    }
