"""
Duplicate-case identification.

Cases are grouped by the values of the matching variables, each group is
optionally sorted by the sorting variables, and indicator columns are
derived per case:

- primary indicator: 1 for exactly one case per group (first or last
  after sorting), 0 for the other members
- sequential count: 1-based position of the case inside its group

When ``move_matching_to_top`` is set, cases that belong to a group with
more than one member are moved to the front of the dataset and every
index in the result refers to the reordered rows.
"""
import logging
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence, Tuple

from frequency import assemble_valid_rows
from messages import ColumnRef, DuplicateGroup, DuplicateRequest, DuplicateResult, FrequencyRow, RawValue
from missing_values import to_number
from tables import duplicate_summary_table, frequency_rows_table
from value_format import stringify

stage_logger = logging.getLogger("tabulation.stage")

PRIMARY_LABELS = {0: "Duplicate case", 1: "Primary case"}


def _cell(row: Sequence[RawValue], column_index: int) -> RawValue:
    if column_index < len(row):
        return row[column_index]
    return None


def _key_part(cell: RawValue) -> str:
    return "" if cell is None else stringify(cell)


def compare_cells(a: RawValue, b: RawValue) -> int:
    """Arithmetic when both cells are numeric, case-insensitive text otherwise."""
    xa, xb = to_number(a), to_number(b)
    if xa is not None and xb is not None:
        return (xa > xb) - (xa < xb)
    sa, sb = _key_part(a).casefold(), _key_part(b).casefold()
    return (sa > sb) - (sa < sb)


def group_rows(data: Sequence[Sequence[RawValue]], matching: Sequence[ColumnRef]) -> Dict[Tuple[str, ...], List[int]]:
    groups: Dict[Tuple[str, ...], List[int]] = {}
    for idx, row in enumerate(data):
        key = tuple(_key_part(_cell(row, ref.column_index)) for ref in matching)
        groups.setdefault(key, []).append(idx)
    return groups


def sort_members(members: List[int], data: Sequence[Sequence[RawValue]],
                 sorting: Sequence[ColumnRef], descending: bool) -> List[int]:
    if not sorting:
        return list(members)
    sign = -1 if descending else 1

    def _cmp(i: int, j: int) -> int:
        for ref in sorting:
            c = compare_cells(_cell(data[i], ref.column_index), _cell(data[j], ref.column_index))
            if c:
                return sign * c
        return 0

    return sorted(members, key=cmp_to_key(_cmp))


def _row_order(n_rows: int, groups: Sequence[List[int]], move_matching_to_top: bool) -> List[int]:
    if not move_matching_to_top:
        return list(range(n_rows))
    front = [idx for members in groups if len(members) > 1 for idx in members]
    moved = set(front)
    return front + [idx for idx in range(n_rows) if idx not in moved]


def _indicator_frequencies(values: Sequence[int], categories: Sequence[int],
                           labels: Optional[Dict[int, str]] = None) -> List[FrequencyRow]:
    n = len(values)
    counts: Dict[int, int] = {c: 0 for c in categories}
    for v in values:
        counts[v] = counts.get(v, 0) + 1
    labels = labels or {}
    return assemble_valid_rows(
        [(c, labels.get(c, str(c)), counts[c]) for c in categories],
        total_n=n,
        valid_n=n,
    )


def find_duplicate_cases(request: DuplicateRequest, request_id: Optional[Any] = None) -> DuplicateResult:
    data = request.data
    n_rows = len(data)

    # --- Group ---
    stage_logger.info("stage=dup_group request_id=%s rows=%s", request_id, n_rows)
    grouped = group_rows(data, request.matching_variables)

    # --- SortWithinGroup ---
    descending = request.sort_order == "descending"
    keys = list(grouped)
    members_by_group = [
        sort_members(grouped[k], data, request.sorting_variables, descending) for k in keys
    ]

    # --- Reorder ---
    order = _row_order(n_rows, members_by_group, request.move_matching_to_top)
    new_index = {old: new for new, old in enumerate(order)}
    reordered = [list(data[old]) for old in order]
    members_by_group = [[new_index[i] for i in members] for members in members_by_group]
    stage_logger.info(
        "stage=dup_reorder request_id=%s groups=%s moved=%s",
        request_id, len(keys), request.move_matching_to_top
    )

    # --- DeriveIndicators ---
    primary = [0] * n_rows
    sequence: Optional[List[int]] = [0] * n_rows if request.sequential_count else None
    for members in members_by_group:
        chosen = members[0] if request.primary_case_indicator == "first" else members[-1]
        primary[chosen] = 1
        if sequence is not None:
            for rank, idx in enumerate(members, start=1):
                sequence[idx] = rank

    dup_groups = [m for m in members_by_group if len(m) > 1]
    total_duplicates = sum(len(m) - 1 for m in dup_groups)

    # --- Tabulate ---
    primary_freq = _indicator_frequencies(primary, [0, 1], PRIMARY_LABELS)
    sequence_freq = None
    if sequence is not None:
        sequence_freq = _indicator_frequencies(sequence, sorted(set(sequence)))

    stage_logger.info(
        "stage=dup_done request_id=%s duplicate_groups=%s duplicates=%s",
        request_id, len(dup_groups), total_duplicates
    )

    return DuplicateResult(
        reordered_data=reordered,
        primary_values=primary,
        sequence_values=sequence,
        primary_frequencies=primary_freq,
        sequence_frequencies=sequence_freq,
        total_duplicates=total_duplicates,
        total_groups=len(dup_groups),
        groups=[
            DuplicateGroup(key=list(k), members=members)
            for k, members in zip(keys, members_by_group)
        ],
    )


def duplicate_statistics(request: DuplicateRequest, result: DuplicateResult) -> List[Dict[str, Any]]:
    n_rows = len(result.primary_values)
    tables = [duplicate_summary_table(result)]
    if request.display_frequencies:
        tables.append(frequency_rows_table(request.primary_name, result.primary_frequencies, [], n_rows))
        if result.sequence_frequencies is not None:
            tables.append(frequency_rows_table(request.sequential_name, result.sequence_frequencies, [], n_rows))
    return tables
