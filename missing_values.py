"""
Missing-value classification for a single cell.

A cell is valid, system-missing, or user-defined missing (a discrete
value or a numeric range declared on the variable).  Classification never
raises: values that cannot be coerced simply fail to match a rule.
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from messages import DATE, NUMERIC, MissingSpec, RawValue


class MissingKind(str, Enum):
    NONE = "none"
    SYSTEM = "system"
    USER_DEFINED = "user_defined"


@dataclass(frozen=True)
class ClassifiedValue:
    raw: RawValue
    missing_kind: MissingKind
    representative: RawValue = None

    @property
    def is_missing(self) -> bool:
        return self.missing_kind is not MissingKind.NONE


def to_number(raw: Any) -> Optional[float]:
    """Explicit numeric coercion shared by every component.

    Returns ``None`` for booleans, blank strings, NaN, infinities and
    anything ``float()`` rejects.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        x = float(raw)
    elif isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        try:
            x = float(s)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(x):
        return None
    return x


def _matches_discrete(raw: RawValue, member: RawValue, var_type: str) -> bool:
    if var_type == NUMERIC:
        a, b = to_number(raw), to_number(member)
        if a is not None and b is not None:
            return a == b
    return str(raw) == str(member)


def classify(raw: RawValue, spec: Optional[MissingSpec], var_type: str) -> ClassifiedValue:
    if raw is None:
        return ClassifiedValue(raw, MissingKind.SYSTEM)
    if var_type in (NUMERIC, DATE) and raw == "":
        return ClassifiedValue(raw, MissingKind.SYSTEM)
    if spec is None:
        return ClassifiedValue(raw, MissingKind.NONE)

    if spec.discrete:
        for member in spec.discrete:
            if _matches_discrete(raw, member, var_type):
                return ClassifiedValue(raw, MissingKind.USER_DEFINED, member)

    if var_type == NUMERIC and spec.range is not None:
        x = to_number(raw)
        if x is not None and spec.range.min <= x <= spec.range.max:
            return ClassifiedValue(raw, MissingKind.USER_DEFINED, raw)

    return ClassifiedValue(raw, MissingKind.NONE)
