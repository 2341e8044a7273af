"""Workbook file adapter: xlsx/csv files in, row matrices out (and back).

This is the only module that touches file formats.  Everything it returns
is a plain ``{sheet_name: [[cell, ...], ...]}`` mapping for
:func:`sheetbook.sheet_parser.parse_sheet`.  Cached formula results are read
(``data_only=True``); formulas themselves are not imported.
"""

from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Mapping, Sequence, Union

import polars as pl

Matrix = list[list[Any]]
Source = Union[Path, str, bytes]

XLSX_SUFFIXES = {".xlsx", ".xlsm"}
CSV_SUFFIXES = {".csv"}

# Excel limit on worksheet titles
_MAX_TITLE_LEN = 31
_INVALID_TITLE_CHARS = set('[]:*?/\\')


def _require_openpyxl():
    try:
        import openpyxl
    except ImportError:
        raise ImportError(
            "openpyxl is required for workbook import/export.  "
            "Install with: pip install openpyxl"
        )
    return openpyxl


def _trim(matrix: Matrix) -> Matrix:
    """Drop trailing rows whose cells are all empty."""
    end = len(matrix)
    while end > 0 and all(c is None or (isinstance(c, str) and not c.strip()) for c in matrix[end - 1]):
        end -= 1
    return matrix[:end]


def read_workbook(source: Source) -> dict[str, Matrix]:
    """Read every worksheet of an xlsx file into a row matrix.

    Args:
        source: Path to the file, or its raw bytes (e.g. an HTTP upload).

    Returns:
        Mapping of sheet name to row matrix, in workbook order.
    """
    openpyxl = _require_openpyxl()
    handle = io.BytesIO(source) if isinstance(source, bytes) else str(source)
    wb = openpyxl.load_workbook(handle, data_only=True, read_only=True)
    try:
        sheets: dict[str, Matrix] = {}
        for ws in wb.worksheets:
            sheets[ws.title] = _trim([list(row) for row in ws.iter_rows(values_only=True)])
        return sheets
    finally:
        wb.close()


def _coerce(cell: Any) -> Any:
    if not isinstance(cell, str):
        return cell
    text = cell.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def read_csv_matrix(source: Source) -> Matrix:
    """Read a CSV file into a row matrix; numeric-looking cells become numbers."""
    handle = io.BytesIO(source) if isinstance(source, bytes) else str(source)
    df = pl.read_csv(
        handle,
        has_header=False,
        infer_schema=False,
        truncate_ragged_lines=True,
        encoding="utf8-lossy",
    )
    return _trim([[_coerce(c) for c in row] for row in df.rows()])


def read_matrices(source: Source, file_name: str | None = None) -> dict[str, Matrix]:
    """Dispatch on the file suffix.  A CSV file yields one sheet named after it.

    Raises:
        ValueError: Unsupported file type.
    """
    name = file_name or (str(source) if not isinstance(source, bytes) else "")
    path = Path(name)
    suffix = path.suffix.lower()
    if suffix in CSV_SUFFIXES:
        return {path.stem or "Sheet1": read_csv_matrix(source)}
    if suffix in XLSX_SUFFIXES:
        return read_workbook(source)
    raise ValueError(f"Unsupported file type {suffix or name!r}; expected .xlsx or .csv")


def safe_sheet_title(name: str, used: set[str]) -> str:
    """A worksheet title Excel accepts, unique among *used*."""
    base = "".join("_" if ch in _INVALID_TITLE_CHARS else ch for ch in name).strip() or "Sheet"
    base = base[:_MAX_TITLE_LEN]
    title, n = base, 1
    while title in used:
        n += 1
        suffix = f"_{n}"
        title = base[: _MAX_TITLE_LEN - len(suffix)] + suffix
    used.add(title)
    return title


def write_workbook(sheets: Mapping[str, Sequence[Sequence[Any]]], path: Path) -> Path:
    """Write row matrices to an xlsx file, one worksheet per entry."""
    openpyxl = _require_openpyxl()
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    used: set[str] = set()
    for name, matrix in sheets.items():
        ws = wb.create_sheet(title=safe_sheet_title(name, used))
        for row in matrix:
            ws.append(list(row))
    if not sheets:
        wb.create_sheet(title="Sheet1")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(str(path))
    return path
