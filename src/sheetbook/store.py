"""Period-slot persistence for imported sheets.

Rows are stored in SQLite under a *period slot* ``(owner_id, year, month)``.
An import replaces the whole slot: the delete of the old rows and the
inserts of the new ones run in one ``BEGIN IMMEDIATE`` transaction, so
readers (WAL mode) see either the previous import or the new one, and two
concurrent imports of the same slot serialize on the write lock.

Each sheet is written under its own SAVEPOINT.  A sheet that fails to
persist is rolled back alone, logged and reported; the rest still commit.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Union

from sheetbook.logging import EventLevel, EventType, emit, make_import_event
from sheetbook.logging.events import SHEET_PERSIST_FAILED, SHEET_ROWS_TRUNCATED
from sheetbook.values import as_number, from_plain, is_empty, looks_numeric, to_plain
from sheetbook.workspace import Sheet

DEFAULT_MAX_ROWS_PER_SHEET = 1000

# Reserved keys in plain row dicts that carry financial tags instead of values
TAG_KEYS = {"_amount": "amount", "_flow_type": "flow_type", "_occurred_on": "occurred_on"}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS persisted_rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    target_year INTEGER NOT NULL,
    target_month INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    sheet_name TEXT NOT NULL,
    original_index INTEGER NOT NULL,
    snapshot TEXT NOT NULL,
    amount REAL,
    flow_type TEXT,
    occurred_on TEXT,
    import_id TEXT NOT NULL,
    imported_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rows_slot
    ON persisted_rows (owner_id, target_year, target_month);

CREATE TABLE IF NOT EXISTS sheet_imports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    target_year INTEGER NOT NULL,
    target_month INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    sheet_name TEXT NOT NULL,
    columns TEXT NOT NULL,
    original_count INTEGER NOT NULL,
    persisted_count INTEGER NOT NULL,
    import_id TEXT NOT NULL,
    imported_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sheet_imports_slot
    ON sheet_imports (owner_id, target_year, target_month);
"""


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonthPeriod:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= int(self.month) <= 12:
            raise ValueError(f"month must be 1..12, got {self.month!r}")
        if not 1 <= int(self.year) <= 9999:
            raise ValueError(f"year out of range: {self.year!r}")

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def bounds(self) -> tuple[int, int]:
        ordinal = self.year * 100 + self.month
        return ordinal, ordinal


@dataclass(frozen=True)
class DateRange:
    """Inclusive date range; matches every period month it overlaps."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")

    def bounds(self) -> tuple[int, int]:
        return (
            self.start.year * 100 + self.start.month,
            self.end.year * 100 + self.end.month,
        )


Period = Union[MonthPeriod, DateRange]


# ---------------------------------------------------------------------------
# Import payloads and results
# ---------------------------------------------------------------------------


@dataclass
class TagMapping:
    """Value columns holding a sheet's financial tags."""

    amount_column: str | None = None
    flow_type_column: str | None = None
    date_column: str | None = None


@dataclass
class ImportRow:
    values: dict[str, Any]
    # raw tag value; parsed when the row is persisted
    amount: Any = None
    flow_type: str | None = None
    occurred_on: str | None = None


@dataclass
class ImportSheet:
    name: str
    columns: list[str]
    rows: list[ImportRow]
    tags: TagMapping | None = None

    @classmethod
    def from_sheet(cls, sheet: Sheet, tags: TagMapping | None = None) -> ImportSheet:
        """Snapshot a workspace sheet's editing buffer for import."""
        return cls(
            name=sheet.name,
            columns=sheet.column_titles,
            rows=[ImportRow(values=rec) for rec in sheet.records()],
            tags=tags,
        )

    @classmethod
    def from_records(
        cls,
        name: str,
        columns: Iterable[str] | None,
        records: Iterable[Mapping[str, Any]],
        tags: TagMapping | None = None,
    ) -> ImportSheet:
        """Build from plain dict rows; ``_amount``/``_flow_type``/``_occurred_on``
        keys are lifted out of the values into tags."""
        rows: list[ImportRow] = []
        for rec in records:
            values = {k: v for k, v in rec.items() if k not in TAG_KEYS}
            tag_values = {TAG_KEYS[k]: v for k, v in rec.items() if k in TAG_KEYS}
            rows.append(
                ImportRow(
                    values=values,
                    amount=tag_values.get("amount"),
                    flow_type=tag_values.get("flow_type") or None,
                    occurred_on=_date_text(tag_values.get("occurred_on")),
                )
            )
        cols = list(columns) if columns else (list(rows[0].values) if rows else [])
        return cls(name=name, columns=[str(c) for c in cols], rows=rows, tags=tags)


@dataclass
class SheetImportSummary:
    name: str
    original_count: int
    persisted_count: int
    ok: bool = True
    error: str | None = None

    @property
    def truncated(self) -> bool:
        return self.persisted_count < self.original_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "originalCount": self.original_count,
            "persistedCount": self.persisted_count,
            "truncated": self.truncated,
            "ok": self.ok,
            "error": self.error,
        }


@dataclass
class ImportResult:
    import_id: str
    target_year: int
    target_month: int
    total_sheets_attempted: int
    per_sheet: list[SheetImportSummary] = field(default_factory=list)

    @property
    def imported_sheet_count(self) -> int:
        return sum(1 for s in self.per_sheet if s.ok)

    @property
    def failed_sheet_count(self) -> int:
        return sum(1 for s in self.per_sheet if not s.ok)

    @property
    def target_month_key(self) -> str:
        return f"{self.target_year:04d}-{self.target_month:02d}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "importId": self.import_id,
            "importedCount": self.imported_sheet_count,
            "totalSheets": self.total_sheets_attempted,
            "targetMonth": self.target_month_key,
            "perSheetSummaries": [s.to_dict() for s in self.per_sheet],
        }


@dataclass
class PersistedRow:
    id: int
    owner_id: str
    target_year: int
    target_month: int
    file_name: str
    sheet_name: str
    original_index: int
    snapshot: dict[str, Any]
    amount: float | None
    flow_type: str | None
    occurred_on: str | None
    import_id: str
    imported_at: str


def _date_text(raw: Any) -> str | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    return str(raw).strip() or None


def _amount(raw: Any) -> float | None:
    """Parse an explicit amount tag; blank is untagged.

    Raises:
        ValueError: The tag is present but not numeric.
    """
    cell = from_plain(raw)
    if is_empty(cell):
        return None
    if not looks_numeric(cell):
        raise ValueError(f"amount tag is not numeric: {raw!r}")
    return as_number(cell)


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def resolve_tags(row: ImportRow, mapping: TagMapping | None) -> tuple[float | None, str | None, str | None]:
    """Explicit row tags win; otherwise read them from the mapped value columns."""
    amount, flow_type, occurred_on = _amount(row.amount), row.flow_type, row.occurred_on
    if mapping is None:
        return amount, flow_type, occurred_on
    if amount is None and mapping.amount_column:
        cell = from_plain(row.values.get(mapping.amount_column))
        if looks_numeric(cell):
            amount = as_number(cell)
    if flow_type is None and mapping.flow_type_column:
        cell = from_plain(row.values.get(mapping.flow_type_column))
        if not is_empty(cell):
            flow_type = str(to_plain(cell))
    if occurred_on is None and mapping.date_column:
        occurred_on = _date_text(row.values.get(mapping.date_column))
    return amount, flow_type, occurred_on


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PeriodStore:
    """SQLite-backed storage of imported rows, keyed by period slot.

    Args:
        db_path: SQLite database file (created on first use).
        max_rows_per_sheet: Cap on rows persisted per sheet per import.
    """

    def __init__(self, db_path: Path, *, max_rows_per_sheet: int = DEFAULT_MAX_ROWS_PER_SHEET) -> None:
        if max_rows_per_sheet < 1:
            raise ValueError("max_rows_per_sheet must be >= 1")
        self.db_path = Path(db_path)
        self.max_rows_per_sheet = max_rows_per_sheet
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode: transactions are opened explicitly.
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_period(
        self,
        owner_id: str,
        sheets: Iterable[ImportSheet],
        target_year: int,
        target_month: int,
        *,
        file_name: str = "",
    ) -> ImportResult:
        """Replace the period slot's rows with *sheets*.

        Args:
            owner_id: Owner of the period slot.
            sheets: Sheets to persist, in order.
            target_year: Period year.
            target_month: Period month (1..12).
            file_name: Originating file name, kept for listings.

        Returns:
            Per-sheet summaries and counts.  Sheets that failed are
            reported with ``ok=False``; they do not abort the import.
        """
        period = MonthPeriod(int(target_year), int(target_month))
        sheet_list = list(sheets)
        import_id = uuid.uuid4().hex
        imported_at = _utc_now()
        result = ImportResult(
            import_id=import_id,
            target_year=period.year,
            target_month=period.month,
            total_sheets_attempted=len(sheet_list),
        )

        emit(
            make_import_event(
                EventType.import_started,
                EventLevel.info,
                f"Importing {len(sheet_list)} sheet(s) into {period.key}",
                owner_id=owner_id,
                target_year=period.year,
                target_month=period.month,
                extra={"file_name": file_name, "import_id": import_id},
            ),
            import_id=import_id,
        )

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                slot = (owner_id, period.year, period.month)
                conn.execute(
                    "DELETE FROM persisted_rows WHERE owner_id = ? AND target_year = ? AND target_month = ?",
                    slot,
                )
                conn.execute(
                    "DELETE FROM sheet_imports WHERE owner_id = ? AND target_year = ? AND target_month = ?",
                    slot,
                )
                for idx, sheet in enumerate(sheet_list):
                    savepoint = f"sheet_{idx}"
                    conn.execute(f"SAVEPOINT {savepoint}")
                    try:
                        summary = self._insert_sheet(
                            conn, sheet, owner_id, period, file_name, import_id, imported_at
                        )
                        conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                    except (sqlite3.Error, TypeError, ValueError) as exc:
                        conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                        conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                        summary = SheetImportSummary(
                            name=getattr(sheet, "name", f"#{idx}"),
                            original_count=len(getattr(sheet, "rows", []) or []),
                            persisted_count=0,
                            ok=False,
                            error=str(exc),
                        )
                        emit(
                            make_import_event(
                                EventType.import_sheet_failed,
                                EventLevel.error,
                                f"Sheet {summary.name!r} skipped: {exc}",
                                owner_id=owner_id,
                                target_year=period.year,
                                target_month=period.month,
                                sheet_name=summary.name,
                                error_code=SHEET_PERSIST_FAILED,
                            ),
                            import_id=import_id,
                        )
                    result.per_sheet.append(summary)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        emit(
            make_import_event(
                EventType.import_completed,
                EventLevel.warning if result.failed_sheet_count else EventLevel.info,
                f"Imported {result.imported_sheet_count}/{result.total_sheets_attempted} sheet(s) into {period.key}",
                owner_id=owner_id,
                target_year=period.year,
                target_month=period.month,
                extra={
                    "import_id": import_id,
                    "imported_sheets": result.imported_sheet_count,
                    "failed_sheets": result.failed_sheet_count,
                },
            ),
            import_id=import_id,
        )
        return result

    def _insert_sheet(
        self,
        conn: sqlite3.Connection,
        sheet: ImportSheet,
        owner_id: str,
        period: MonthPeriod,
        file_name: str,
        import_id: str,
        imported_at: str,
    ) -> SheetImportSummary:
        name = str(sheet.name or "").strip()
        if not name:
            raise ValueError("sheet name must not be blank")
        original_count = len(sheet.rows)
        kept = sheet.rows[: self.max_rows_per_sheet]

        params = []
        for index, row in enumerate(kept):
            amount, flow_type, occurred_on = resolve_tags(row, sheet.tags)
            snapshot = json.dumps(row.values, ensure_ascii=False, allow_nan=False)
            params.append((
                owner_id, period.year, period.month, file_name, name, index,
                snapshot, amount, flow_type, occurred_on, import_id, imported_at,
            ))
        conn.executemany(
            "INSERT INTO persisted_rows (owner_id, target_year, target_month, file_name, "
            "sheet_name, original_index, snapshot, amount, flow_type, occurred_on, "
            "import_id, imported_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            params,
        )
        conn.execute(
            "INSERT INTO sheet_imports (owner_id, target_year, target_month, file_name, "
            "sheet_name, columns, original_count, persisted_count, import_id, imported_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                owner_id, period.year, period.month, file_name, name,
                json.dumps(list(sheet.columns), ensure_ascii=False),
                original_count, len(kept), import_id, imported_at,
            ),
        )

        if len(kept) < original_count:
            emit(
                make_import_event(
                    EventType.import_sheet_truncated,
                    EventLevel.warning,
                    f"Sheet {name!r}: truncated from {original_count} to {len(kept)} rows",
                    owner_id=owner_id,
                    target_year=period.year,
                    target_month=period.month,
                    sheet_name=name,
                    error_code=SHEET_ROWS_TRUNCATED,
                ),
                import_id=import_id,
            )
        return SheetImportSummary(name=name, original_count=original_count, persisted_count=len(kept))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_rows(self, owner_id: str, period: Period) -> list[PersistedRow]:
        """All rows of *owner_id* within *period*, in insertion order."""
        lo, hi = period.bounds()
        with self._connect() as conn:
            cur = conn.execute(
                "SELECT * FROM persisted_rows WHERE owner_id = ? "
                "AND (target_year * 100 + target_month) BETWEEN ? AND ? "
                "ORDER BY target_year, target_month, id",
                (owner_id, lo, hi),
            )
            return [self._row(r) for r in cur.fetchall()]

    def count_rows(self, owner_id: str, period: Period) -> int:
        lo, hi = period.bounds()
        with self._connect() as conn:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM persisted_rows WHERE owner_id = ? "
                "AND (target_year * 100 + target_month) BETWEEN ? AND ?",
                (owner_id, lo, hi),
            ).fetchone()
        return int(n)

    def list_periods(self, owner_id: str) -> list[dict[str, Any]]:
        """Summaries of every stored period slot of *owner_id*, newest first."""
        with self._connect() as conn:
            cur = conn.execute(
                "SELECT target_year, target_month, COUNT(*) AS sheets, "
                "SUM(persisted_count) AS rows, SUM(original_count) AS original_rows, "
                "MAX(imported_at) AS imported_at, MAX(file_name) AS file_name "
                "FROM sheet_imports WHERE owner_id = ? "
                "GROUP BY target_year, target_month "
                "ORDER BY target_year DESC, target_month DESC",
                (owner_id,),
            )
            out = []
            for r in cur.fetchall():
                out.append({
                    "targetMonth": f"{r['target_year']:04d}-{r['target_month']:02d}",
                    "targetYear": r["target_year"],
                    "month": r["target_month"],
                    "sheets": r["sheets"],
                    "rows": r["rows"] or 0,
                    "originalRows": r["original_rows"] or 0,
                    "fileName": r["file_name"],
                    "importedAt": r["imported_at"],
                })
            return out

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_period(self, owner_id: str, target_year: int, target_month: int) -> int:
        """Delete a whole period slot.  Returns the number of rows removed."""
        period = MonthPeriod(int(target_year), int(target_month))
        slot = (owner_id, period.year, period.month)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                deleted = conn.execute(
                    "DELETE FROM persisted_rows WHERE owner_id = ? AND target_year = ? AND target_month = ?",
                    slot,
                ).rowcount
                conn.execute(
                    "DELETE FROM sheet_imports WHERE owner_id = ? AND target_year = ? AND target_month = ?",
                    slot,
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        emit(
            make_import_event(
                EventType.period_deleted,
                EventLevel.info,
                f"Deleted {deleted} row(s) from {period.key}",
                owner_id=owner_id,
                target_year=period.year,
                target_month=period.month,
            )
        )
        return deleted

    def delete_sheet(self, owner_id: str, target_year: int, target_month: int, sheet_name: str) -> int:
        """Delete one sheet's rows from a period slot.  Returns rows removed."""
        period = MonthPeriod(int(target_year), int(target_month))
        key = (owner_id, period.year, period.month, sheet_name)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                deleted = conn.execute(
                    "DELETE FROM persisted_rows WHERE owner_id = ? AND target_year = ? "
                    "AND target_month = ? AND sheet_name = ?",
                    key,
                ).rowcount
                conn.execute(
                    "DELETE FROM sheet_imports WHERE owner_id = ? AND target_year = ? "
                    "AND target_month = ? AND sheet_name = ?",
                    key,
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return deleted

    @staticmethod
    def _row(r: sqlite3.Row) -> PersistedRow:
        return PersistedRow(
            id=r["id"],
            owner_id=r["owner_id"],
            target_year=r["target_year"],
            target_month=r["target_month"],
            file_name=r["file_name"],
            sheet_name=r["sheet_name"],
            original_index=r["original_index"],
            snapshot=json.loads(r["snapshot"]),
            amount=r["amount"],
            flow_type=r["flow_type"],
            occurred_on=r["occurred_on"],
            import_id=r["import_id"],
            imported_at=r["imported_at"],
        )
