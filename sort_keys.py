import math
import re
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from messages import DATE, NUMERIC, RawValue
from missing_values import to_number

RE_DMY_DATE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")

# Rank 0 (numbers, timestamps) always orders before rank 1 (text).
SortKey = Tuple[int, Union[float, str]]


def parse_dmy(raw: RawValue) -> Optional[datetime]:
    """Parse a ``DD-MM-YYYY`` cell into a UTC datetime, or ``None``."""
    if not isinstance(raw, str):
        return None
    m = RE_DMY_DATE.match(raw.strip())
    if not m:
        return None
    day, month, year = (int(g) for g in m.groups())
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def sort_key(raw: RawValue, var_type: str) -> SortKey:
    if var_type == NUMERIC:
        if raw == "":
            return (0, math.inf)
        x = to_number(raw)
        if x is not None:
            return (0, x)
        return (1, str(raw))

    if var_type == DATE:
        d = parse_dmy(raw)
        if d is not None:
            return (0, d.timestamp())
        return (1, str(raw))

    return (1, "" if raw is None else str(raw))


def ordering_key(raw: RawValue, var_type: str) -> Tuple[SortKey, str]:
    """Total order: type-aware key first, string form of the raw value second."""
    return (sort_key(raw, var_type), str(raw))
