"""FastAPI server for sheetbook.

Routes are thin wrappers over the shared :class:`WorkspaceService`.  The
caller's owner id comes from the ``X-Owner-Id`` header (set by whatever
authenticates requests in front of this app); without it the project's
``default_owner`` is used.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Literal

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from sheetbook.errors import (
    DuplicateColumnError,
    EditSessionError,
    RowNotFoundError,
    SheetbookError,
    SheetNotFoundError,
    WorkbookNotFoundError,
)
from sheetbook.formulas.errors import CyclicFormulaError
from sheetbook.service import WorkspaceService
from sheetbook.store import DateRange, ImportSheet, MonthPeriod, TagMapping
from sheetbook.xlsx_io import write_workbook

# The singleton service is set at startup by ``create_app()``.
_service: WorkspaceService | None = None

_NOT_FOUND = (RowNotFoundError, WorkbookNotFoundError, SheetNotFoundError)
_CONFLICT = (DuplicateColumnError, CyclicFormulaError, EditSessionError)


def create_app(project_dir: Path) -> FastAPI:
    """Create the FastAPI application for a given project.

    Args:
        project_dir: Root of the sheetbook project.

    Returns:
        Configured FastAPI instance.
    """
    global _service
    _service = WorkspaceService(project_dir=Path(project_dir))

    from sheetbook import __version__
    from sheetbook.logging import set_project_dir

    set_project_dir(_service.project_dir)

    app = FastAPI(title="sheetbook", version=__version__)
    app.include_router(_table_data_router())
    app.include_router(_workbook_router())

    @app.exception_handler(SheetbookError)
    async def sheetbook_error(request: Request, exc: SheetbookError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "error": "ValueError"})

    @app.get("/api/events")
    def events(
        level: str | None = Query(None),
        event_type: str | None = Query(None),
        import_id: str | None = Query(None),
        limit: int = Query(200, ge=1, le=2000),
        owner_id: str = Depends(_owner),
    ) -> list[dict[str, Any]]:
        return _svc().tail_events(
            level=level, event_type=event_type, owner_id=owner_id, import_id=import_id, limit=limit
        )

    return app


def status_for(exc: SheetbookError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, _NOT_FOUND):
        return 404
    if isinstance(exc, _CONFLICT):
        return 409
    return 400


def _svc() -> WorkspaceService:
    """Get the singleton service, raising if not initialised."""
    if _service is None:
        raise HTTPException(500, "Service not initialised")
    return _service


def _owner(x_owner_id: str | None = Header(None)) -> str:
    owner = (x_owner_id or "").strip()
    return owner or str(_svc().config.get("default_owner") or "local")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TagMappingModel(_CamelModel):
    amount_column: str | None = Field(None, alias="amountColumn")
    flow_type_column: str | None = Field(None, alias="flowTypeColumn")
    date_column: str | None = Field(None, alias="dateColumn")

    def to_mapping(self) -> TagMapping:
        return TagMapping(self.amount_column, self.flow_type_column, self.date_column)


class SheetPayload(_CamelModel):
    name: str
    rows: list[dict[str, Any]] = Field(default_factory=list)
    columns: list[str] | None = None
    tags: TagMappingModel | None = None


class ImportRequest(_CamelModel):
    file_name: str = Field("", alias="fileName")
    sheets: list[SheetPayload]
    target_year: int = Field(alias="targetYear")
    target_month: int = Field(alias="targetMonth", ge=1, le=12)


class WorkbookImportRequest(_CamelModel):
    target_year: int = Field(alias="targetYear")
    target_month: int = Field(alias="targetMonth", ge=1, le=12)
    sheets: list[str] | None = None
    tags: dict[str, TagMappingModel] = Field(default_factory=dict)


class RowPatchRequest(BaseModel):
    values: dict[str, Any]


class ColumnRequest(BaseModel):
    title: str


class CalculatedColumnRequest(_CamelModel):
    title: str | None = None
    operand_a: str | None = Field(None, alias="operandA")
    operand_b: str | None = Field(None, alias="operandB")
    operator: str | None = None
    formula: str | None = None


class ReorderRequest(_CamelModel):
    axis: Literal["rows", "columns"]
    from_index: int = Field(alias="fromIndex")
    to_index: int = Field(alias="toIndex")


class SheetSelector(BaseModel):
    sheet: str | None = None


# ---------------------------------------------------------------------------
# Period data (persisted rows)
# ---------------------------------------------------------------------------


def _table_data_router():
    from fastapi import APIRouter

    router = APIRouter(prefix="/api/table-data")

    @router.post("/import")
    def import_table_data(req: ImportRequest, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        sheets = [
            ImportSheet.from_records(
                s.name, s.columns, s.rows, s.tags.to_mapping() if s.tags else None
            )
            for s in req.sheets
        ]
        result = _svc().import_sheets(
            owner_id, sheets, req.target_year, req.target_month, file_name=req.file_name
        )
        return result.to_dict()

    @router.get("/monthly")
    def monthly(
        target_year: int | None = Query(None, alias="targetYear"),
        target_month: int | None = Query(None, alias="targetMonth", ge=1, le=12),
        start_date: date | None = Query(None, alias="startDate"),
        end_date: date | None = Query(None, alias="endDate"),
        owner_id: str = Depends(_owner),
    ) -> dict[str, Any]:
        if target_year is not None and target_month is not None:
            period = MonthPeriod(target_year, target_month)
        elif start_date is not None and end_date is not None:
            period = DateRange(start_date, end_date)
        else:
            raise HTTPException(400, "Give targetYear and targetMonth, or startDate and endDate")
        return _svc().monthly_view(owner_id, period).to_dict()

    @router.get("/periods")
    def periods(owner_id: str = Depends(_owner)) -> list[dict[str, Any]]:
        return _svc().list_periods(owner_id)

    @router.delete("/{year}/{month}")
    def delete_period(year: int, month: int, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        deleted = _svc().delete_period(owner_id, year, month)
        return {"deletedCount": deleted}

    @router.delete("/{year}/{month}/sheets/{sheet_name}")
    def delete_sheet(year: int, month: int, sheet_name: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        deleted = _svc().delete_sheet(owner_id, year, month, sheet_name)
        return {"deletedCount": deleted}

    return router


# ---------------------------------------------------------------------------
# Workbooks (in-memory workspaces)
# ---------------------------------------------------------------------------


def _workbook_router():
    from fastapi import APIRouter

    router = APIRouter(prefix="/api/workbooks")

    @router.post("")
    def upload(file: UploadFile = File(...), owner_id: str = Depends(_owner)) -> dict[str, Any]:
        content = file.file.read()
        wb = _svc().open_file(owner_id, content, file.filename or "upload.xlsx")
        return wb.summary()

    @router.get("")
    def list_workbooks(owner_id: str = Depends(_owner)) -> list[dict[str, Any]]:
        return _svc().list_workbooks(owner_id)

    @router.get("/{wid}")
    def get_workbook(wid: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().workbook_summary(owner_id, wid)

    @router.delete("/{wid}")
    def close_workbook(wid: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        _svc().close_workbook(owner_id, wid)
        return {"closed": wid}

    @router.get("/{wid}/export")
    def export_workbook(wid: str, owner_id: str = Depends(_owner)) -> FileResponse:
        svc = _svc()
        matrices = svc.export_matrices(owner_id, wid)
        out = write_workbook(matrices, svc.project_dir / "exports" / f"{wid}.xlsx")
        return FileResponse(
            str(out),
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            filename=out.name,
        )

    # -- Sheet --

    @router.get("/{wid}/sheets/{sheet}")
    def get_sheet(wid: str, sheet: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().get_sheet(owner_id, wid, sheet)

    # -- Rows --

    @router.post("/{wid}/sheets/{sheet}/rows")
    def add_row(wid: str, sheet: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().add_row(owner_id, wid, sheet)

    @router.patch("/{wid}/sheets/{sheet}/rows/{key}")
    def edit_row(wid: str, sheet: str, key: int, req: RowPatchRequest, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().edit_row(owner_id, wid, sheet, key, req.values)

    @router.delete("/{wid}/sheets/{sheet}/rows/{key}")
    def delete_row(wid: str, sheet: str, key: int, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        _svc().delete_row(owner_id, wid, sheet, key)
        return {"deleted": key}

    # -- Columns --

    @router.post("/{wid}/sheets/{sheet}/columns")
    def add_column(wid: str, sheet: str, req: ColumnRequest, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().add_column(owner_id, wid, sheet, req.title)

    @router.delete("/{wid}/sheets/{sheet}/columns/{title}")
    def delete_column(wid: str, sheet: str, title: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        _svc().delete_column(owner_id, wid, sheet, title)
        return {"deleted": title}

    @router.post("/{wid}/sheets/{sheet}/calculated")
    def add_calculated(
        wid: str, sheet: str, req: CalculatedColumnRequest, owner_id: str = Depends(_owner)
    ) -> dict[str, Any]:
        return _svc().add_calculated_column(
            owner_id, wid, sheet,
            title=req.title, operand_a=req.operand_a, operand_b=req.operand_b,
            operator=req.operator, text=req.formula,
        )

    @router.put("/{wid}/sheets/{sheet}/calculated/{title}")
    def redefine_calculated(
        wid: str, sheet: str, title: str, req: CalculatedColumnRequest, owner_id: str = Depends(_owner)
    ) -> dict[str, Any]:
        return _svc().redefine_calculated_column(
            owner_id, wid, sheet, title,
            operand_a=req.operand_a, operand_b=req.operand_b,
            operator=req.operator, text=req.formula,
        )

    @router.post("/{wid}/sheets/{sheet}/reorder")
    def reorder(wid: str, sheet: str, req: ReorderRequest, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        svc = _svc()
        if req.axis == "rows":
            svc.reorder_rows(owner_id, wid, sheet, req.from_index, req.to_index)
        else:
            svc.reorder_columns(owner_id, wid, sheet, req.from_index, req.to_index)
        return svc.get_sheet(owner_id, wid, sheet)

    # -- Edit sessions --

    # registered before /edit/{key} so "commit" is not read as a row key
    @router.post("/{wid}/sheets/{sheet}/edit/commit")
    def commit_edit(wid: str, sheet: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().commit_edit(owner_id, wid, sheet)

    @router.post("/{wid}/sheets/{sheet}/edit/{key}")
    def begin_edit(wid: str, sheet: str, key: int, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().begin_edit(owner_id, wid, sheet, key)

    @router.patch("/{wid}/sheets/{sheet}/edit")
    def stage_edit(wid: str, sheet: str, req: RowPatchRequest, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return _svc().stage_edit(owner_id, wid, sheet, req.values)

    @router.delete("/{wid}/sheets/{sheet}/edit")
    def cancel_edit(wid: str, sheet: str, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        _svc().cancel_edit(owner_id, wid, sheet)
        return {"cancelled": True}

    # -- Baseline --

    @router.post("/{wid}/save")
    def save(wid: str, req: SheetSelector | None = None, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return {"saved": _svc().save(owner_id, wid, req.sheet if req else None)}

    @router.post("/{wid}/reset")
    def reset(wid: str, req: SheetSelector | None = None, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        return {"reset": _svc().reset(owner_id, wid, req.sheet if req else None)}

    # -- Persist --

    @router.post("/{wid}/import")
    def import_workbook(wid: str, req: WorkbookImportRequest, owner_id: str = Depends(_owner)) -> dict[str, Any]:
        result = _svc().import_workbook(
            owner_id, wid, req.target_year, req.target_month,
            sheet_names=req.sheets,
            tags={name: t.to_mapping() for name, t in req.tags.items()},
        )
        return result.to_dict()

    return router
