"""Shared service layer for the HTTP API and the CLI.

Open workbooks live in memory, keyed by ``(owner_id, workbook_id)``.  Every
call that touches one workbook holds that workbook's lock, so concurrent
requests against the same workspace are applied one at a time.  Persistence
and monthly views go through the project's :class:`PeriodStore`.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from sheetbook.aggregation import MonthlyView, get_monthly_view
from sheetbook.errors import EditSessionError, ParseError, SheetNotFoundError, WorkbookNotFoundError
from sheetbook.formulas import Formula, FormulaError, parse_formula_text
from sheetbook.formulas.errors import CyclicFormulaError
from sheetbook.logging import EventType, emit_info, emit_warning, get_sink
from sheetbook.logging.events import FORMULA_CYCLE, FORMULA_OPERAND, SHEET_PARSE_ERROR
from sheetbook.project import database_path, load_project_config
from sheetbook.sheet_parser import parse_sheet, serialize_sheet
from sheetbook.store import ImportResult, ImportSheet, Period, PeriodStore, TagMapping
from sheetbook.workspace import Sheet
from sheetbook.xlsx_io import Matrix, Source, read_matrices


@dataclass
class Workbook:
    """Sheets parsed from one uploaded file."""

    workbook_id: str
    owner_id: str
    file_name: str
    sheets: dict[str, Sheet] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def sheet(self, name: str) -> Sheet:
        sheet = self.sheets.get(name)
        if sheet is None:
            raise SheetNotFoundError(name, available=list(self.sheets))
        return sheet

    def summary(self) -> dict[str, Any]:
        return {
            "workbookId": self.workbook_id,
            "fileName": self.file_name,
            "sheets": [
                {
                    "name": s.name,
                    "rowCount": s.row_count,
                    "columns": s.column_titles,
                    "numericColumns": s.numeric_columns(),
                    "dirty": s.dirty,
                }
                for s in self.sheets.values()
            ],
            "failures": [{"name": n, "error": e} for n, e in self.failures.items()],
        }


class WorkspaceService:
    """In-memory workspaces plus period storage for one project.

    Parameters
    ----------
    project_dir : Path
        Root of the sheetbook project (holds ``sheetbook.yaml``).
    """

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.config = load_project_config(self.project_dir)
        self.store = PeriodStore(
            database_path(self.project_dir, self.config),
            max_rows_per_sheet=int(self.config["max_import_rows_per_sheet"]),
        )
        self._workbooks: dict[tuple[str, str], Workbook] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Workbook registry
    # ------------------------------------------------------------------

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _get_workbook(self, owner_id: str, workbook_id: str) -> Workbook:
        with self._registry_lock:
            wb = self._workbooks.get((owner_id, workbook_id))
        if wb is None:
            raise WorkbookNotFoundError(workbook_id)
        return wb

    @contextmanager
    def _locked(self, owner_id: str, workbook_id: str) -> Iterator[Workbook]:
        with self._lock_for((owner_id, workbook_id)):
            yield self._get_workbook(owner_id, workbook_id)

    @contextmanager
    def _sheet(self, owner_id: str, workbook_id: str, sheet_name: str) -> Iterator[Sheet]:
        with self._locked(owner_id, workbook_id) as wb:
            yield wb.sheet(sheet_name)

    def open_matrices(
        self,
        owner_id: str,
        matrices: Mapping[str, Matrix],
        *,
        file_name: str = "",
    ) -> Workbook:
        """Parse row matrices into a new workbook.

        A sheet that fails to parse is recorded in ``failures`` and skipped;
        the remaining sheets are still opened.
        """
        scan_rows = int(self.config["header_scan_rows"])
        wb = Workbook(workbook_id=uuid.uuid4().hex[:12], owner_id=owner_id, file_name=file_name)
        for name, matrix in matrices.items():
            try:
                sheet = parse_sheet(matrix, name, header_scan_rows=scan_rows)
            except ParseError as exc:
                wb.failures[name] = str(exc)
                emit_warning(
                    EventType.sheet_parse_failed,
                    str(exc),
                    {"owner_id": owner_id, "file_name": file_name, "sheet_name": name},
                    error_code=SHEET_PARSE_ERROR,
                )
                continue
            wb.sheets[name] = sheet
            emit_info(
                EventType.sheet_parsed,
                f"Parsed sheet {name!r}: {sheet.row_count} row(s), {len(sheet.column_titles)} column(s)",
                {"owner_id": owner_id, "file_name": file_name, "sheet_name": name},
            )
        with self._registry_lock:
            self._workbooks[(owner_id, wb.workbook_id)] = wb
        return wb

    def open_file(self, owner_id: str, source: Source, file_name: str | None = None) -> Workbook:
        """Read an xlsx/csv file (path or bytes) and open it as a workbook."""
        name = file_name or Path(str(source)).name
        return self.open_matrices(owner_id, read_matrices(source, name), file_name=name)

    def list_workbooks(self, owner_id: str) -> list[dict[str, Any]]:
        with self._registry_lock:
            books = [wb for (owner, _), wb in self._workbooks.items() if owner == owner_id]
        return [wb.summary() for wb in books]

    def workbook_summary(self, owner_id: str, workbook_id: str) -> dict[str, Any]:
        with self._locked(owner_id, workbook_id) as wb:
            return wb.summary()

    def close_workbook(self, owner_id: str, workbook_id: str) -> None:
        key = (owner_id, workbook_id)
        with self._lock_for(key):
            with self._registry_lock:
                if self._workbooks.pop(key, None) is None:
                    raise WorkbookNotFoundError(workbook_id)
                self._locks.pop(key, None)

    # ------------------------------------------------------------------
    # Sheet reads
    # ------------------------------------------------------------------

    def get_sheet(self, owner_id: str, workbook_id: str, sheet_name: str) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            data = sheet.to_dict()
            data["numericColumns"] = sheet.numeric_columns()
            return data

    def export_matrices(self, owner_id: str, workbook_id: str) -> dict[str, Matrix]:
        with self._locked(owner_id, workbook_id) as wb:
            return {name: serialize_sheet(s) for name, s in wb.sheets.items()}

    # ------------------------------------------------------------------
    # Row and column mutations
    # ------------------------------------------------------------------

    def add_row(self, owner_id: str, workbook_id: str, sheet_name: str) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            row = sheet.add_row()
            return {"key": row.key, "values": row.plain()}

    def edit_row(
        self, owner_id: str, workbook_id: str, sheet_name: str, key: int, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            row = sheet.edit_row(key, patch)
            return {"key": row.key, "values": row.plain()}

    def delete_row(self, owner_id: str, workbook_id: str, sheet_name: str, key: int) -> None:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            sheet.delete_row(key)

    def add_column(self, owner_id: str, workbook_id: str, sheet_name: str, title: str) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            column = sheet.add_column(title)
            return {"title": column.title, "kind": column.kind.value}

    def delete_column(self, owner_id: str, workbook_id: str, sheet_name: str, title: str) -> None:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            sheet.delete_column(title)

    def add_calculated_column(
        self,
        owner_id: str,
        workbook_id: str,
        sheet_name: str,
        *,
        title: str | None = None,
        operand_a: str | None = None,
        operand_b: str | None = None,
        operator: str | None = None,
        text: str | None = None,
    ) -> dict[str, Any]:
        """Add a calculated column from explicit parts or from formula text."""
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            formula = self._formula_from(title, operand_a, operand_b, operator, text)
            try:
                sheet.add_calculated_column(
                    formula.result_column, formula.operand_a, formula.operand_b, formula.operator
                )
            except FormulaError as exc:
                self._formula_rejected(owner_id, sheet, exc)
                raise
            self._formula_registered(owner_id, sheet, formula)
            return formula.to_dict()

    def redefine_calculated_column(
        self,
        owner_id: str,
        workbook_id: str,
        sheet_name: str,
        title: str,
        *,
        operand_a: str | None = None,
        operand_b: str | None = None,
        operator: str | None = None,
        text: str | None = None,
    ) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            formula = self._formula_from(title, operand_a, operand_b, operator, text)
            try:
                sheet.redefine_calculated_column(
                    title, formula.operand_a, formula.operand_b, formula.operator
                )
            except FormulaError as exc:
                self._formula_rejected(owner_id, sheet, exc)
                raise
            self._formula_registered(owner_id, sheet, formula)
            return formula.to_dict()

    @staticmethod
    def _formula_from(
        title: str | None,
        operand_a: str | None,
        operand_b: str | None,
        operator: str | None,
        text: str | None,
    ) -> Formula:
        if text:
            return parse_formula_text(text, result_column=title)
        missing = [
            n for n, v in (("title", title), ("operand_a", operand_a),
                           ("operand_b", operand_b), ("operator", operator)) if not v
        ]
        if missing:
            raise ValueError(f"Missing formula fields: {missing}")
        return Formula.build(title, operand_a, operand_b, operator)

    @staticmethod
    def _formula_registered(owner_id: str, sheet: Sheet, formula: Formula) -> None:
        emit_info(
            EventType.formula_registered,
            f"Sheet {sheet.name!r}: {formula.describe()}",
            {"owner_id": owner_id, "sheet_name": sheet.name, "result_column": formula.result_column},
        )

    @staticmethod
    def _formula_rejected(owner_id: str, sheet: Sheet, exc: FormulaError) -> None:
        code = FORMULA_CYCLE if isinstance(exc, CyclicFormulaError) else FORMULA_OPERAND
        emit_warning(
            EventType.formula_rejected,
            str(exc),
            {"owner_id": owner_id, "sheet_name": sheet.name},
            error_code=code,
        )

    def reorder_rows(self, owner_id: str, workbook_id: str, sheet_name: str, from_index: int, to_index: int) -> None:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            sheet.reorder_rows(from_index, to_index)

    def reorder_columns(self, owner_id: str, workbook_id: str, sheet_name: str, from_index: int, to_index: int) -> None:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            sheet.reorder_columns(from_index, to_index)

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def save(self, owner_id: str, workbook_id: str, sheet_name: str | None = None) -> list[str]:
        """Save one sheet, or every dirty sheet.  Returns the saved names."""
        with self._locked(owner_id, workbook_id) as wb:
            targets = [wb.sheet(sheet_name)] if sheet_name else [s for s in wb.sheets.values() if s.dirty]
            for sheet in targets:
                sheet.save()
            names = [s.name for s in targets]
        emit_info(
            EventType.workspace_saved,
            f"Saved {len(names)} sheet(s)",
            {"owner_id": owner_id, "workbook_id": workbook_id, "sheets": names},
        )
        return names

    def reset(self, owner_id: str, workbook_id: str, sheet_name: str | None = None) -> list[str]:
        """Reset one sheet, or every dirty sheet, to its baseline."""
        with self._locked(owner_id, workbook_id) as wb:
            targets = [wb.sheet(sheet_name)] if sheet_name else [s for s in wb.sheets.values() if s.dirty]
            for sheet in targets:
                sheet.reset()
            names = [s.name for s in targets]
        emit_info(
            EventType.workspace_reset,
            f"Reset {len(names)} sheet(s)",
            {"owner_id": owner_id, "workbook_id": workbook_id, "sheets": names},
        )
        return names

    # ------------------------------------------------------------------
    # Edit sessions
    # ------------------------------------------------------------------

    def begin_edit(self, owner_id: str, workbook_id: str, sheet_name: str, key: int) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            session = sheet.begin_edit(key)
            return {"key": session.key, "values": session.current()}

    def stage_edit(
        self, owner_id: str, workbook_id: str, sheet_name: str, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            session = self._open_session(sheet)
            for title, value in values.items():
                session.set(title, value)
            return {"key": session.key, "values": session.current()}

    def commit_edit(self, owner_id: str, workbook_id: str, sheet_name: str) -> dict[str, Any]:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            row = sheet.commit(self._open_session(sheet))
            return {"key": row.key, "values": row.plain()}

    def cancel_edit(self, owner_id: str, workbook_id: str, sheet_name: str) -> None:
        with self._sheet(owner_id, workbook_id, sheet_name) as sheet:
            sheet.cancel(self._open_session(sheet))

    @staticmethod
    def _open_session(sheet: Sheet):
        session = sheet.edit_session
        if session is None:
            raise EditSessionError(f"No row is being edited on sheet {sheet.name!r}")
        return session

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def import_workbook(
        self,
        owner_id: str,
        workbook_id: str,
        target_year: int,
        target_month: int,
        *,
        sheet_names: Iterable[str] | None = None,
        tags: Mapping[str, TagMapping] | None = None,
    ) -> ImportResult:
        """Persist a workbook's current editing buffers into a period slot."""
        tags = tags or {}
        with self._locked(owner_id, workbook_id) as wb:
            names = list(sheet_names) if sheet_names else list(wb.sheets)
            payload = [ImportSheet.from_sheet(wb.sheet(n), tags.get(n)) for n in names]
            file_name = wb.file_name
        return self.store.import_period(
            owner_id, payload, target_year, target_month, file_name=file_name
        )

    def import_sheets(
        self,
        owner_id: str,
        sheets: Iterable[ImportSheet],
        target_year: int,
        target_month: int,
        *,
        file_name: str = "",
    ) -> ImportResult:
        return self.store.import_period(owner_id, sheets, target_year, target_month, file_name=file_name)

    def monthly_view(self, owner_id: str, period: Period) -> MonthlyView:
        return get_monthly_view(
            self.store,
            owner_id,
            period,
            income_labels=self.config["income_labels"],
            expense_labels=self.config["expense_labels"],
            internal_prefix=str(self.config["internal_field_prefix"]),
        )

    def list_periods(self, owner_id: str) -> list[dict[str, Any]]:
        return self.store.list_periods(owner_id)

    def delete_period(self, owner_id: str, target_year: int, target_month: int) -> int:
        return self.store.delete_period(owner_id, target_year, target_month)

    def delete_sheet(self, owner_id: str, target_year: int, target_month: int, sheet_name: str) -> int:
        return self.store.delete_sheet(owner_id, target_year, target_month, sheet_name)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def tail_events(
        self,
        *,
        level: str | None = None,
        event_type: str | None = None,
        owner_id: str | None = None,
        import_id: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Most-recent-first events from the global or a per-import log."""
        from sheetbook.logging.sink import EventSink

        sink = get_sink() or EventSink(self.project_dir)
        if import_id:
            return list(reversed(sink.read_import_log(import_id)))[: min(limit, 2000)]
        return sink.read_global(level=level, event_type=event_type, owner_id=owner_id, limit=limit)
