from typing import Optional

from messages import DATE, NUMERIC, STRING, RawValue, VariableMeta
from missing_values import to_number
from sort_keys import parse_dmy

# Fixed month table so display output never depends on the runtime locale.
MONTH_ABBREVIATIONS = (
    "JAN", "FEB", "MAR", "APR", "MAY", "JUN",
    "JUL", "AUG", "SEP", "OCT", "NOV", "DEC",
)

EMPTY_STRING_DISPLAY = '""'


def stringify(raw: RawValue) -> str:
    if isinstance(raw, float) and raw.is_integer():
        return str(int(raw))
    return str(raw)


def _numeric_label(x: float, meta: VariableMeta) -> Optional[str]:
    for vl in meta.value_labels:
        if to_number(vl.value) == x:
            return vl.label
    return None


def _string_label(raw: str, meta: VariableMeta) -> Optional[str]:
    for vl in meta.value_labels:
        if vl.value is not None and str(vl.value) == raw:
            return vl.label
    return None


def format_date(raw: RawValue) -> str:
    d = parse_dmy(raw)
    if d is None:
        return stringify(raw)
    return f"{d.day:02d}-{MONTH_ABBREVIATIONS[d.month - 1]}-{d.year:04d}"


def format_value(raw: RawValue, meta: VariableMeta) -> str:
    if meta.type == STRING:
        if raw == "":
            return EMPTY_STRING_DISPLAY
        s = stringify(raw)
        label = _string_label(s, meta)
        return label if label is not None else s

    if meta.type == NUMERIC:
        x = to_number(raw)
        if x is None:
            return stringify(raw)
        label = _numeric_label(x, meta)
        if label is not None:
            return label
        return f"{x:.{meta.decimals}f}"

    if meta.type == DATE:
        return format_date(raw)

    return stringify(raw)
