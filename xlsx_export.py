import io
import re
from typing import Any, Dict, List, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter


INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")


def _normalize_table(table: Dict[str, Any]) -> Tuple[List[str], List[List[Any]]]:
    """
    Flattens one result table into (headers, rows):
      - the "rowHeader" column expands to as many columns as the deepest rowHeader
      - every other column header maps to its key in each row
    """
    if not isinstance(table, dict):
        raise ValueError("each table must be an object")
    columns = table.get("columnHeaders") or []
    rows = table.get("rows") or []
    if not isinstance(columns, list) or not isinstance(rows, list):
        raise ValueError("columnHeaders and rows must be lists")

    depth = max([len(r.get("rowHeader") or []) for r in rows if isinstance(r, dict)] + [0])
    value_cols = [c for c in columns if isinstance(c, dict) and c.get("key") != "rowHeader"]

    headers = [""] * depth + [str(c.get("header", "")) for c in value_cols]
    out: List[List[Any]] = []
    for r in rows:
        if not isinstance(r, dict):
            raise ValueError("each row must be an object")
        rh = list(r.get("rowHeader") or [])
        rh += [""] * (depth - len(rh))
        out.append(rh + [r.get(c.get("key"), "") for c in value_cols])
    return headers, out


def _sheet_title(title: str, used: set) -> str:
    base = INVALID_SHEET_CHARS.sub("_", (title or "").strip())[:31] or "Table"
    name, n = base, 2
    while name.lower() in used:
        suffix = f" ({n})"
        name = base[:31 - len(suffix)] + suffix
        n += 1
    used.add(name.lower())
    return name


def build_xlsx_bytes(tables: Sequence[Dict[str, Any]]) -> bytes:
    if not tables:
        raise ValueError("no tables to export")

    wb = Workbook()
    wb.remove(wb.active)
    used: set = set()

    for table in tables:
        headers, rows = _normalize_table(table)
        ws = wb.create_sheet(title=_sheet_title(str(table.get("title", "")), used))

        # Row 1: table title, row 2: column headers
        ws.append([str(table.get("title", ""))])
        ws["A1"].font = Font(bold=True, size=12)
        ws.append(headers)
        for cell in ws[2]:
            cell.font = Font(bold=True)
            cell.alignment = Alignment(wrap_text=True, vertical="top")
        ws.freeze_panes = "A3"

        for r in rows:
            ws.append(r)

        # light autosize (cap width to avoid silly columns)
        for col_idx in range(1, ws.max_column + 1):
            letter = get_column_letter(col_idx)
            max_len = 0
            for cell in ws[letter][1:]:
                v = "" if cell.value is None else str(cell.value)
                if len(v) > max_len:
                    max_len = len(v)
            ws.column_dimensions[letter].width = min(max(10, max_len + 2), 60)

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
