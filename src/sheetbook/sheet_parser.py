"""Turn a raw row matrix into a typed :class:`~sheetbook.workspace.Sheet`.

The matrix is whatever a workbook decoder produced: a list of rows, each a
list of plain cell values (``None``, numbers, strings, dates).  Parsing:

- finds the header row -- the first of the leading rows holding at least two
  non-empty string cells, falling back to the first row;
- builds columns from its trimmed, non-blank titles;
- drops rows in which every cell is empty and coerces the rest.
"""

from __future__ import annotations

from typing import Any, Sequence

from sheetbook.errors import ParseError
from sheetbook.values import EMPTY, from_plain, is_empty, to_plain
from sheetbook.workspace import Row, Sheet

HEADER_SCAN_ROWS = 5


def _is_blank(cell: Any) -> bool:
    return cell is None or (isinstance(cell, str) and cell.strip() == "")


def find_header_row(matrix: Sequence[Sequence[Any]], scan_rows: int = HEADER_SCAN_ROWS) -> int:
    """Return the index of the header row within *matrix*."""
    for i, row in enumerate(matrix[:scan_rows]):
        labels = [c for c in row if isinstance(c, str) and c.strip() != ""]
        if len(labels) >= 2:
            return i
    return 0


def _header_titles(header: Sequence[Any]) -> list[tuple[int, str]]:
    """(source position, unique title) for every non-blank header cell."""
    titles: list[tuple[int, str]] = []
    used: set[str] = set()
    for pos, cell in enumerate(header):
        if _is_blank(cell):
            continue
        base = str(to_plain(from_plain(cell))).strip()
        if not base:
            continue
        title, n = base, 1
        while title in used:
            n += 1
            title = f"{base}_{n}"
        used.add(title)
        titles.append((pos, title))
    return titles


def parse_sheet(
    matrix: Sequence[Sequence[Any]],
    name: str,
    *,
    header_scan_rows: int = HEADER_SCAN_ROWS,
) -> Sheet:
    """Parse a row matrix into a sheet.

    Args:
        matrix: Raw rows of cell values.
        name: Sheet name.
        header_scan_rows: How many leading rows may hold the header.

    Returns:
        A new :class:`Sheet` whose baseline equals its buffer.

    Raises:
        ParseError: The matrix is empty or its header row has no titles.
    """
    rows = [list(r) if r is not None else [] for r in matrix]
    if not rows:
        raise ParseError(name, "no rows to parse")

    header_idx = find_header_row(rows, header_scan_rows)
    titles = _header_titles(rows[header_idx])
    if not titles:
        raise ParseError(name, f"header row {header_idx + 1} has no column titles")

    parsed: list[Row] = []
    for raw in rows[header_idx + 1:]:
        if all(_is_blank(c) for c in raw):
            continue
        values = {}
        for pos, title in titles:
            values[title] = from_plain(raw[pos]) if pos < len(raw) else EMPTY
        if all(is_empty(v) for v in values.values()):
            continue
        parsed.append(Row(key=len(parsed), values=values))

    return Sheet(name, [t for _, t in titles], parsed)


def serialize_sheet(sheet: Sheet) -> list[list[Any]]:
    """Render a sheet's editing buffer as a matrix with a header row."""
    titles = sheet.column_titles
    matrix: list[list[Any]] = [list(titles)]
    for record in sheet.records():
        matrix.append([record[t] if record[t] != "" else None for t in titles])
    return matrix
