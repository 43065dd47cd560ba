"""Excel and text helpers for task inputs and result files."""

from __future__ import annotations

import io
import re
import zipfile
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"

DIVIDER = "\n" + "-" * 50 + "\n"


class WorkbookError(ValueError):
    """The uploaded bytes are not a readable .xlsx workbook."""


def to_snake_case(header: Any) -> str:
    """'Has Report' -> 'has_report', 'Last-Updated' -> 'last_updated'."""
    return re.sub(r"[^a-z0-9]+", "_", str(header or "").strip().lower()).strip("_")


def read_rows(data: bytes, *, list_cols: Sequence[str] = ()) -> List[Dict[str, Any]]:
    """
    Read the first worksheet into dicts keyed by snake_case header.
    String cells in `list_cols` are split on commas into lists.
    """
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise WorkbookError(f"Could not read workbook: {e}") from e

    try:
        rows = wb.worksheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if not header:
            return []
        keys = [to_snake_case(h) for h in header]

        out: List[Dict[str, Any]] = []
        for values in rows:
            if values is None or all(v is None or v == "" for v in values):
                continue
            row: Dict[str, Any] = {}
            for key, value in zip(keys, values):
                if not key:
                    continue
                if key in list_cols:
                    if isinstance(value, str):
                        value = [s.strip() for s in value.split(",") if s.strip()]
                    elif value is None:
                        value = []
                row[key] = value
            out.append(row)
        return out
    finally:
        wb.close()


def _cell(value: Any) -> Any:
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v) for v in value)
    return value


def write_rows(rows: Iterable[Dict[str, Any]], *, headers: Optional[List[str]] = None) -> bytes:
    """Write dict rows to a single-sheet workbook; headers default to first-seen key order."""
    rows = list(rows)
    if headers is None:
        headers = []
        for r in rows:
            for key in r:
                if key not in headers:
                    headers.append(key)
    if not headers:
        raise ValueError("Rows must have at least one column.")

    wb = Workbook()
    ws = wb.active
    ws.title = "Sheet1"
    ws.append(headers)
    for r in rows:
        ws.append([_cell(r.get(h)) for h in headers])

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def text_bytes(text: str) -> bytes:
    return text.encode("utf-8")
