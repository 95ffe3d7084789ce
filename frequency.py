"""
Frequency distribution for one variable.

The aggregator runs Scan → Sort → Assemble over a column of raw cells:

- Scan: classify every cell, add its case weight to the valid bucket of
  its raw value or to the missing bucket of its representative (or the
  System bucket); cases with an unusable weight are skipped
- Sort: valid and user-missing categories ascending by the type-aware
  ordering key; the System bucket always closes the missing section
- Assemble: percent, valid percent and cumulative percent per row, plus
  quartiles for numeric variables

Cumulative percent is clamped to 100.
"""
import logging
import math
from collections import Counter
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from messages import (
    NUMERIC,
    FrequencyRow,
    Number,
    Percentile,
    RawValue,
    VariableData,
    VariableFrequencyResult,
    VariableMeta,
)
from missing_values import MissingKind, classify, to_number
from sort_keys import ordering_key
from value_format import format_value

stage_logger = logging.getLogger("tabulation.stage")

SYSTEM_MISSING_LABEL = "System"
CUMULATIVE_EPSILON = 1e-9
PERCENTILE_POINTS = (25, 50, 75)


class VariableProcessingError(RuntimeError):
    """One variable failed; the whole batch is abandoned."""

    def __init__(self, variable_name: str, cause: BaseException):
        self.variable_name = variable_name
        self.cause = cause
        super().__init__(f"Error processing variable '{variable_name}': {cause}")


class _SystemBucket:
    """Sentinel key for system-missing counts; never equal to a raw value."""

    def __repr__(self) -> str:
        return SYSTEM_MISSING_LABEL


SYSTEM = _SystemBucket()


def _pct(n: float, d: float) -> float:
    return (n / d * 100.0) if d else 0.0


def assemble_valid_rows(
    categories: Sequence[Tuple[RawValue, str, Number]],
    total_n: Number,
    valid_n: Number,
) -> List[FrequencyRow]:
    """Build valid rows from ``(value, label, frequency)`` in display order."""
    rows: List[FrequencyRow] = []
    cumulative = 0.0
    for i, (value, label, freq) in enumerate(categories):
        valid_pct = _pct(freq, valid_n)
        cumulative = min(cumulative + valid_pct, 100.0)
        if i == len(categories) - 1 and cumulative >= 100.0 - CUMULATIVE_EPSILON:
            cumulative = 100.0
        rows.append(FrequencyRow(
            label=label,
            value=value,
            frequency=freq,
            percent_of_total=_pct(freq, total_n),
            percent_of_valid=valid_pct,
            cumulative_percent=cumulative,
        ))
    return rows


def assemble_missing_rows(
    categories: Sequence[Tuple[RawValue, str, Number]],
    total_n: Number,
) -> List[FrequencyRow]:
    return [
        FrequencyRow(label=label, value=value, frequency=freq, percent_of_total=_pct(freq, total_n))
        for value, label, freq in categories
    ]


def _modes(valid: Sequence[Tuple[RawValue, Number]]) -> List[RawValue]:
    if not valid:
        return []
    top = max(freq for _, freq in valid)
    return [value for value, freq in valid if freq == top]


def case_weight(weights: Optional[Sequence[Any]], index: int) -> Optional[Number]:
    """Weight of one case; ``None`` drops the case from every count.

    Without weights, or past the end of the weight list, or for a null
    weight, the case counts once.  Booleans, text, non-finite and
    non-positive weights are unusable.
    """
    if weights is None or index >= len(weights) or weights[index] is None:
        return 1
    w = weights[index]
    if isinstance(w, bool) or not isinstance(w, (int, float)):
        return None
    if not math.isfinite(w) or w <= 0:
        return None
    return w


def numeric_distribution(valid: Sequence[Tuple[RawValue, Number]]) -> Tuple[List[float], List[Number]]:
    """Merge valid categories by numeric value: sorted values ``y`` and weights ``c``."""
    merged: Dict[float, Number] = {}
    for value, freq in valid:
        x = to_number(value)
        if x is not None:
            merged[x] = merged.get(x, 0) + freq
    y = sorted(merged)
    return y, [merged[v] for v in y]


def percentile(y: Sequence[float], c: Sequence[Number], p: float, method: str = "waverage") -> Optional[float]:
    """Weighted percentile of a sorted distribution.

    ``waverage`` interpolates at ``W * p / 100`` (SPSS definition 1);
    ``haverage`` interpolates at ``(W + 1) * p / 100`` (the classic
    FREQUENCIES default).
    """
    w_total = sum(c)
    if not y or w_total <= 0:
        return None

    if method == "haverage":
        r = (w_total + 1) * p / 100.0
        if r <= 1:
            return float(y[0])
        if r >= w_total:
            return float(y[-1])
        lower_pos, upper_pos = math.floor(r), math.ceil(r)
        lower: Optional[float] = None
        upper: Optional[float] = None
        cumulative: Number = 0
        for value, weight in zip(y, c):
            cumulative += weight
            if lower is None and cumulative >= lower_pos:
                lower = value
            if cumulative >= upper_pos:
                upper = value
                break
        if lower is None:
            lower = y[0]
        if upper is None:
            upper = y[-1]
        frac = r - lower_pos
        return float((1 - frac) * lower + frac * upper)

    target = w_total * p / 100.0
    if target <= 0:
        return float(y[0])
    if target >= w_total:
        return float(y[-1])
    cumulative = 0
    for k, weight in enumerate(c):
        previous = cumulative
        cumulative += weight
        if cumulative >= target:
            y_prev = y[k - 1] if k > 0 else y[0]
            g = (target - previous) / weight
            return float((1 - g) * y_prev + g * y[k])
    return float(y[-1])


def compute_frequencies(
    meta: VariableMeta,
    data: Iterable[RawValue],
    weights: Optional[Sequence[Any]] = None,
    percentile_method: str = "waverage",
) -> VariableFrequencyResult:
    # --- Scan ---
    valid_counts: Dict[Hashable, Number] = Counter()
    valid_first: Dict[Hashable, RawValue] = {}
    missing_counts: Dict[Hashable, Number] = Counter()
    missing_first: Dict[Hashable, RawValue] = {}

    for i, raw in enumerate(data):
        weight = case_weight(weights, i)
        if weight is None:
            continue
        cv = classify(raw, meta.missing, meta.type)
        if cv.missing_kind is MissingKind.NONE:
            key = raw
            valid_counts[key] += weight
            valid_first.setdefault(key, raw)
        elif cv.missing_kind is MissingKind.SYSTEM:
            missing_counts[SYSTEM] += weight
        else:
            key = cv.representative
            missing_counts[key] += weight
            missing_first.setdefault(key, cv.representative)

    valid_n = sum(valid_counts.values())
    missing_n = sum(missing_counts.values())
    total_n = valid_n + missing_n

    # --- Sort ---
    def _order(first: Dict[Hashable, RawValue]) -> List[Hashable]:
        return sorted(first, key=lambda k: ordering_key(first[k], meta.type))

    valid_sorted = [(valid_first[k], valid_counts[k]) for k in _order(valid_first)]
    missing_sorted = [(missing_first[k], missing_counts[k]) for k in _order(missing_first)]

    # --- Assemble ---
    valid_rows = assemble_valid_rows(
        [(v, format_value(v, meta), f) for v, f in valid_sorted],
        total_n,
        valid_n,
    )
    missing_categories: List[Tuple[RawValue, str, Number]] = [
        (v, format_value(v, meta), f) for v, f in missing_sorted
    ]
    if missing_counts.get(SYSTEM):
        missing_categories.append((None, SYSTEM_MISSING_LABEL, missing_counts[SYSTEM]))
    missing_rows = assemble_missing_rows(missing_categories, total_n)

    percentiles = None
    if meta.type == NUMERIC:
        y, c = numeric_distribution(valid_sorted)
        percentiles = [
            Percentile(percent=p, value=percentile(y, c, p, percentile_method))
            for p in PERCENTILE_POINTS
        ]

    return VariableFrequencyResult(
        variable_name=meta.name,
        variable_label=meta.display_label,
        valid_rows=valid_rows,
        missing_rows=missing_rows,
        total_n=total_n,
        valid_n=valid_n,
        missing_n=missing_n,
        mode=_modes(valid_sorted),
        percentiles=percentiles,
    )


def compute_all(
    variable_data: Sequence[VariableData],
    request_id: Optional[Any] = None,
    percentile_method: str = "waverage",
) -> List[VariableFrequencyResult]:
    """Tabulate every variable in order; the first failure aborts the batch."""
    results: List[VariableFrequencyResult] = []
    for item in variable_data:
        name = item.variable.name
        stage_logger.info(
            "stage=var_start request_id=%s var=%s n=%s weighted=%s",
            request_id, name, len(item.data), item.weights is not None
        )
        try:
            results.append(compute_frequencies(item.variable, item.data, item.weights, percentile_method))
        except Exception as exc:
            stage_logger.exception(
                "stage=var_error request_id=%s var=%s error_type=%s error=%s",
                request_id, name, type(exc).__name__, str(exc)
            )
            raise VariableProcessingError(name, exc) from exc
        finally:
            stage_logger.info("stage=var_end request_id=%s var=%s", request_id, name)
    return results
