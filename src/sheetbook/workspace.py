"""In-memory sheet workspace: editing buffer, baseline and mutations.

A :class:`Sheet` keeps two states -- the *editing buffer* every mutation
acts on, and the *baseline* captured by the last :meth:`Sheet.save`.
Calculated columns are recomputed by the sheet's
:class:`~sheetbook.formulas.FormulaGraph` whenever a row's source values
change; a rejected mutation leaves the buffer untouched.

Row editing goes through an explicit :class:`EditSession`.  At most one
session is open per sheet at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from sheetbook.errors import (
    CalculatedColumnError,
    ColumnTitleError,
    DuplicateColumnError,
    EditSessionError,
    ReorderError,
    RowNotFoundError,
    UnknownColumnError,
)
from sheetbook.formulas import Formula, FormulaGraph, FormulaOperandError, Operator
from sheetbook.formulas.engine import evaluate_formula
from sheetbook.values import EMPTY, CellValue, from_plain, is_empty, looks_numeric, to_plain

logger = logging.getLogger(__name__)


class ColumnKind(str, Enum):
    source = "source"
    calculated = "calculated"


@dataclass(frozen=True)
class Column:
    title: str
    kind: ColumnKind = ColumnKind.source

    @property
    def is_calculated(self) -> bool:
        return self.kind is ColumnKind.calculated


@dataclass
class Row:
    key: int
    values: dict[str, CellValue] = field(default_factory=dict)

    def copy(self) -> Row:
        return Row(key=self.key, values=dict(self.values))

    def plain(self) -> dict[str, Any]:
        return {title: to_plain(v) for title, v in self.values.items()}


@dataclass
class _State:
    columns: list[Column]
    rows: list[Row]
    formulas: FormulaGraph

    def copy(self) -> _State:
        return _State(
            columns=list(self.columns),
            rows=[r.copy() for r in self.rows],
            formulas=self.formulas.copy(),
        )


class EditSession:
    """A pending edit of one row.

    Obtained from :meth:`Sheet.begin_edit`; resolved by :meth:`Sheet.commit`
    or :meth:`Sheet.cancel`.  Values staged with :meth:`set` are applied in
    one ``edit_row`` call on commit.
    """

    def __init__(self, sheet: Sheet, key: int) -> None:
        self._sheet = sheet
        self.key = key
        self.draft: dict[str, Any] = {}
        self._open = True

    @property
    def sheet_name(self) -> str:
        return self._sheet.name

    @property
    def is_open(self) -> bool:
        return self._open

    def set(self, title: str, value: Any) -> None:
        """Stage a new value for a source column."""
        if not self._open:
            raise EditSessionError(f"Edit session for row {self.key} is closed")
        self._sheet._check_patch({title: value})
        self.draft[title] = value

    def current(self) -> dict[str, Any]:
        """The row's values with staged edits laid over them."""
        row = self._sheet.get_row(self.key)
        merged = row.plain()
        merged.update(self.draft)
        return merged

    def _close(self) -> None:
        self._open = False


class Sheet:
    """One named table with an editing buffer and a saved baseline.

    Args:
        name: Sheet name.
        columns: Column titles (source columns) or :class:`Column` objects.
        rows: Initial rows.  Keys must be unique.
        formulas: Formulas for any calculated columns in *columns*.
    """

    def __init__(
        self,
        name: str,
        columns: Iterable[str | Column] = (),
        rows: Iterable[Row] = (),
        formulas: Iterable[Formula] = (),
    ) -> None:
        self.name = name
        cols: list[Column] = []
        seen: set[str] = set()
        for c in columns:
            col = c if isinstance(c, Column) else Column(str(c))
            if col.title in seen:
                raise DuplicateColumnError(col.title)
            seen.add(col.title)
            cols.append(col)

        graph = FormulaGraph(formulas)
        row_list = [r.copy() for r in rows]
        keys = [r.key for r in row_list]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Sheet {name!r}: duplicate row keys")

        self._buffer = _State(columns=cols, rows=row_list, formulas=graph)
        for row in self._buffer.rows:
            graph.apply(row.values)
        self._baseline = self._buffer.copy()
        self._index: dict[int, Row] = {r.key: r for r in self._buffer.rows}
        self._next_key = max(keys) + 1 if keys else 0
        self._dirty = False
        self._session: EditSession | None = None

    @classmethod
    def from_records(
        cls,
        name: str,
        columns: Iterable[str],
        records: Iterable[Mapping[str, Any]],
    ) -> Sheet:
        """Build a sheet from plain dict rows; keys are assigned in order."""
        titles = [str(c) for c in columns]
        rows = []
        for i, rec in enumerate(records):
            rows.append(Row(key=i, values={t: from_plain(rec.get(t)) for t in titles}))
        return cls(name, titles, rows)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def columns(self) -> list[Column]:
        return list(self._buffer.columns)

    @property
    def column_titles(self) -> list[str]:
        return [c.title for c in self._buffer.columns]

    @property
    def source_titles(self) -> list[str]:
        return [c.title for c in self._buffer.columns if not c.is_calculated]

    @property
    def calculated_titles(self) -> list[str]:
        return [c.title for c in self._buffer.columns if c.is_calculated]

    @property
    def formulas(self) -> list[Formula]:
        return self._buffer.formulas.formulas()

    @property
    def rows(self) -> list[Row]:
        return [r.copy() for r in self._buffer.rows]

    @property
    def baseline_rows(self) -> list[Row]:
        return [r.copy() for r in self._baseline.rows]

    @property
    def row_count(self) -> int:
        return len(self._buffer.rows)

    @property
    def edit_session(self) -> EditSession | None:
        return self._session

    def get_row(self, key: int) -> Row:
        row = self._index.get(key)
        if row is None:
            raise RowNotFoundError(key)
        return row.copy()

    def records(self) -> list[dict[str, Any]]:
        """Rows of the editing buffer as plain dicts in column order."""
        titles = self.column_titles
        return [
            {t: to_plain(r.values.get(t, EMPTY)) for t in titles}
            for r in self._buffer.rows
        ]

    def numeric_columns(self, threshold: float = 0.8) -> list[str]:
        """Titles whose non-empty values are at least *threshold* numeric."""
        result = []
        for title in self.column_titles:
            values = [r.values.get(title, EMPTY) for r in self._buffer.rows]
            filled = [v for v in values if not is_empty(v)]
            if not filled:
                continue
            numeric = sum(1 for v in filled if looks_numeric(v))
            if numeric / len(filled) >= threshold:
                result.append(title)
        return result

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view of the editing buffer."""
        columns = []
        for c in self._buffer.columns:
            entry: dict[str, Any] = {"title": c.title, "kind": c.kind.value}
            formula = self._buffer.formulas.get(c.title)
            if formula is not None:
                entry["formula"] = formula.to_dict()
            columns.append(entry)
        return {
            "name": self.name,
            "columns": columns,
            "rows": [
                {"key": r.key, "values": {t: to_plain(r.values.get(t, EMPTY)) for t in self.column_titles}}
                for r in self._buffer.rows
            ],
            "dirty": self._dirty,
            "editing_key": self._session.key if self._session is not None else None,
        }

    # ------------------------------------------------------------------
    # Row mutations
    # ------------------------------------------------------------------

    def add_row(self) -> Row:
        """Append a row of empty source values and compute its formulas."""
        row = Row(key=self._next_key, values={t: EMPTY for t in self.source_titles})
        self._buffer.formulas.apply(row.values)
        self._next_key += 1
        self._buffer.rows.append(row)
        self._index[row.key] = row
        self._dirty = True
        return row.copy()

    def edit_row(self, key: int, patch: Mapping[str, Any]) -> Row:
        """Merge *patch* into a row's source values and recompute that row.

        Raises:
            RowNotFoundError: Unknown key.
            UnknownColumnError: Patch names a column the sheet lacks.
            CalculatedColumnError: Patch writes to a calculated column.
        """
        row = self._index.get(key)
        if row is None:
            raise RowNotFoundError(key)
        self._check_patch(patch)
        values = dict(row.values)
        for title, raw in patch.items():
            values[title] = from_plain(raw)
        self._buffer.formulas.apply(values)
        row.values = values
        self._dirty = True
        return row.copy()

    def delete_row(self, key: int) -> None:
        row = self._index.pop(key, None)
        if row is None:
            raise RowNotFoundError(key)
        self._buffer.rows.remove(row)
        if self._session is not None and self._session.key == key:
            self._close_session()
        self._dirty = True

    def _check_patch(self, patch: Mapping[str, Any]) -> None:
        titles = set(self.column_titles)
        for title in patch:
            if title not in titles:
                raise UnknownColumnError(title, available=self.source_titles)
        calculated = [t for t in patch if t in self._buffer.formulas]
        if calculated:
            raise CalculatedColumnError(calculated)

    # ------------------------------------------------------------------
    # Column mutations
    # ------------------------------------------------------------------

    def _clean_title(self, title: str) -> str:
        clean = str(title).strip()
        if not clean:
            raise ColumnTitleError("Column title must not be blank")
        if clean in self.column_titles:
            raise DuplicateColumnError(clean)
        return clean

    def add_column(self, title: str) -> Column:
        """Append a source column, backfilling every row with an empty value."""
        clean = self._clean_title(title)
        column = Column(clean)
        self._buffer.columns.append(column)
        for row in self._buffer.rows:
            row.values[clean] = EMPTY
        self._dirty = True
        return column

    def add_calculated_column(
        self,
        title: str,
        operand_a: str,
        operand_b: str,
        operator: str | Operator,
    ) -> Column:
        """Register a formula column and compute it for every existing row.

        Raises:
            DuplicateColumnError: *title* already exists.
            FormulaOperandError: An operand names no existing column.
            CyclicFormulaError: An operand is *title* itself.
        """
        clean = self._clean_title(title)
        formula = Formula.build(clean, operand_a, operand_b, operator)
        self._buffer.formulas.register(formula, self.column_titles)
        column = Column(clean, ColumnKind.calculated)
        self._buffer.columns.append(column)
        for row in self._buffer.rows:
            row.values[clean] = evaluate_formula(formula, row.values)
        self._dirty = True
        logger.debug("sheet %r: registered %s", self.name, formula.describe())
        return column

    def redefine_calculated_column(
        self,
        title: str,
        operand_a: str,
        operand_b: str,
        operator: str | Operator,
    ) -> Formula:
        """Replace the formula behind an existing calculated column.

        Raises:
            UnknownColumnError: *title* is not a column of this sheet.
            FormulaOperandError: *title* is a source column, or an operand is unknown.
            CyclicFormulaError: The new bindings close a dependency cycle.
        """
        if title not in self.column_titles:
            raise UnknownColumnError(title, available=self.calculated_titles)
        formula = Formula.build(title, operand_a, operand_b, operator)
        self._buffer.formulas.redefine(formula, self.column_titles)
        for row in self._buffer.rows:
            self._buffer.formulas.apply(row.values)
        self._dirty = True
        return formula

    def delete_column(self, title: str) -> None:
        """Remove a column and, for a calculated column, its formula.

        Raises:
            UnknownColumnError: No such column.
            FormulaOperandError: Another formula still uses the column.
        """
        if title not in self.column_titles:
            raise UnknownColumnError(title, available=self.column_titles)
        users = self._buffer.formulas.dependents(title)
        if users:
            raise FormulaOperandError(
                title,
                message=f"Column {title!r} is used by calculated columns {users}",
            )
        self._buffer.columns = [c for c in self._buffer.columns if c.title != title]
        self._buffer.formulas.remove(title)
        for row in self._buffer.rows:
            row.values.pop(title, None)
        self._dirty = True

    # ------------------------------------------------------------------
    # Reordering
    # ------------------------------------------------------------------

    @staticmethod
    def _move(items: list, from_index: int, to_index: int, what: str) -> bool:
        n = len(items)
        for label, idx in (("from", from_index), ("to", to_index)):
            if not isinstance(idx, int) or idx < 0 or idx >= n:
                raise ReorderError(f"{what} {label}-index {idx!r} out of range [0, {n})")
        if from_index == to_index:
            return False
        items.insert(to_index, items.pop(from_index))
        return True

    def reorder_rows(self, from_index: int, to_index: int) -> None:
        if self._move(self._buffer.rows, from_index, to_index, "row"):
            self._dirty = True

    def reorder_columns(self, from_index: int, to_index: int) -> None:
        if self._move(self._buffer.columns, from_index, to_index, "column"):
            self._dirty = True

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Make the editing buffer the new baseline."""
        self._baseline = self._buffer.copy()
        self._dirty = False

    def reset(self) -> None:
        """Discard buffer changes and any open edit session.

        Row keys handed out since the last save are not reused.
        """
        self._buffer = self._baseline.copy()
        self._index = {r.key: r for r in self._buffer.rows}
        self._close_session()
        self._dirty = False

    # ------------------------------------------------------------------
    # Edit sessions
    # ------------------------------------------------------------------

    def begin_edit(self, key: int) -> EditSession:
        if self._session is not None:
            raise EditSessionError(
                f"Row {self._session.key} is already being edited on sheet {self.name!r}"
            )
        if key not in self._index:
            raise RowNotFoundError(key)
        self._session = EditSession(self, key)
        return self._session

    def _check_session(self, session: EditSession) -> None:
        if session is not self._session or not session.is_open:
            raise EditSessionError(
                f"Edit session for row {session.key} is not the open session of sheet {self.name!r}"
            )

    def commit(self, session: EditSession) -> Row:
        """Apply a session's staged values and close it."""
        self._check_session(session)
        row = self.edit_row(session.key, session.draft)
        self._close_session()
        return row

    def cancel(self, session: EditSession) -> None:
        self._check_session(session)
        self._close_session()

    def _close_session(self) -> None:
        if self._session is not None:
            self._session._close()
        self._session = None
