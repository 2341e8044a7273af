"""Command-line interface for sheetbook."""

from __future__ import annotations

import json
from pathlib import Path

import click

from sheetbook import __version__
from sheetbook.errors import SheetbookError


@click.group()
@click.version_option(version=__version__, prog_name="sheetbook")
def main() -> None:
    """sheetbook -- spreadsheet workspaces with monthly period storage.

    Lifecycle: Inspect -> Edit/Calculate -> Import -> View
    """


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _service(directory: str):
    from sheetbook.logging import set_project_dir
    from sheetbook.service import WorkspaceService

    project_dir = Path(directory)
    set_project_dir(project_dir)
    try:
        return WorkspaceService(project_dir)
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e))


def _owner(svc, owner: str | None) -> str:
    return owner or str(svc.config.get("default_owner") or "local")


def _apply_calcs(svc, owner_id: str, workbook_id: str, sheet_names: list[str], calcs: tuple[str, ...]) -> None:
    for text in calcs:
        for name in sheet_names:
            try:
                svc.add_calculated_column(owner_id, workbook_id, name, text=text)
            except (SheetbookError, ValueError) as e:
                raise click.ClickException(f"{name}: {e}")


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


project_option = click.option(
    "--project", "directory", default=".", type=click.Path(exists=True, file_okay=False),
    help="Project directory.",
)
owner_option = click.option("--owner", default=None, help="Owner id (default: project default_owner).")


# ---------------------------------------------------------------------------
# Init
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def init(directory: str) -> None:
    """Scaffold a new project at DIRECTORY."""
    from sheetbook.project import scaffold_project

    try:
        result = scaffold_project(Path(directory))
    except FileExistsError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created project at {result}")


# ---------------------------------------------------------------------------
# Inspect / export
# ---------------------------------------------------------------------------


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@project_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def inspect(file: str, directory: str, as_json: bool) -> None:
    """Parse FILE and show its sheets, columns and row counts."""
    from sheetbook.values import EMPTY, display

    svc = _service(directory)
    try:
        wb = svc.open_file("local", Path(file))
    except (SheetbookError, ValueError) as e:
        raise click.ClickException(str(e))
    summary = wb.summary()
    if as_json:
        _echo_json(summary)
        return
    click.echo(f"{wb.file_name}: {len(wb.sheets)} sheet(s)")
    for s in summary["sheets"]:
        click.echo(f"  {s['name']}: {s['rowCount']} rows")
        click.echo(f"    columns: {', '.join(s['columns'])}")
        if s["numericColumns"]:
            click.echo(f"    numeric: {', '.join(s['numericColumns'])}")
        sheet = wb.sheets[s["name"]]
        if sheet.row_count:
            first = sheet.rows[0].values
            cells = [display(first.get(t, EMPTY)) for t in sheet.column_titles]
            click.echo(f"    first row: {' | '.join(cells)}")
    for f in summary["failures"]:
        click.echo(f"  Skipped: {f['error']}", err=True)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.argument("out", type=click.Path(dir_okay=False))
@project_option
@click.option("--calc", "calcs", multiple=True, help='Calculated column, e.g. "总价 = 单价 * 数量".')
def export(file: str, out: str, directory: str, calcs: tuple[str, ...]) -> None:
    """Parse FILE, add calculated columns and write the result to OUT (.xlsx)."""
    from sheetbook.xlsx_io import write_workbook

    svc = _service(directory)
    try:
        wb = svc.open_file("local", Path(file))
    except (SheetbookError, ValueError) as e:
        raise click.ClickException(str(e))
    _apply_calcs(svc, "local", wb.workbook_id, list(wb.sheets), calcs)
    path = write_workbook(svc.export_matrices("local", wb.workbook_id), Path(out))
    click.echo(f"Wrote {len(wb.sheets)} sheet(s) to {path}")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


@main.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--year", type=int, required=True, help="Target year.")
@click.option("--month", type=click.IntRange(1, 12), required=True, help="Target month.")
@project_option
@owner_option
@click.option("--sheet", "sheets", multiple=True, help="Import only these sheets.")
@click.option("--calc", "calcs", multiple=True, help='Calculated column, e.g. "总价 = 单价 * 数量".')
@click.option("--amount-col", default=None, help="Column holding the amount tag.")
@click.option("--flow-col", default=None, help="Column holding the income/expense label.")
@click.option("--date-col", default=None, help="Column holding the occurrence date.")
def import_cmd(
    file: str,
    year: int,
    month: int,
    directory: str,
    owner: str | None,
    sheets: tuple[str, ...],
    calcs: tuple[str, ...],
    amount_col: str | None,
    flow_col: str | None,
    date_col: str | None,
) -> None:
    """Import FILE into the YEAR-MONTH period, replacing what was there."""
    from sheetbook.store import TagMapping

    svc = _service(directory)
    owner_id = _owner(svc, owner)
    try:
        wb = svc.open_file(owner_id, Path(file))
    except (SheetbookError, ValueError) as e:
        raise click.ClickException(str(e))

    names = list(sheets) if sheets else list(wb.sheets)
    unknown = [n for n in names if n not in wb.sheets]
    if unknown:
        raise click.ClickException(f"Unknown sheet(s): {unknown}. Available: {list(wb.sheets)}")
    _apply_calcs(svc, owner_id, wb.workbook_id, names, calcs)

    tags = None
    if amount_col or flow_col or date_col:
        mapping = TagMapping(amount_col, flow_col, date_col)
        tags = {n: mapping for n in names}
    result = svc.import_workbook(owner_id, wb.workbook_id, year, month, sheet_names=names, tags=tags)

    click.echo(
        f"Imported {result.imported_sheet_count}/{result.total_sheets_attempted} sheet(s) "
        f"into {result.target_month_key} (import {result.import_id})"
    )
    for s in result.per_sheet:
        if not s.ok:
            click.echo(f"  {s.name}: FAILED ({s.error})", err=True)
        elif s.truncated:
            click.echo(f"  {s.name}: {s.persisted_count} of {s.original_count} rows (truncated)")
        else:
            click.echo(f"  {s.name}: {s.persisted_count} rows")
    for error in wb.failures.values():
        click.echo(f"  Skipped: {error}", err=True)


# ---------------------------------------------------------------------------
# View / periods
# ---------------------------------------------------------------------------


@main.command()
@project_option
@owner_option
@click.option("--year", type=int, default=None, help="Period year.")
@click.option("--month", type=click.IntRange(1, 12), default=None, help="Period month.")
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Range start (YYYY-MM-DD).")
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Range end (YYYY-MM-DD).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def view(directory: str, owner: str | None, year: int | None, month: int | None, start, end, as_json: bool) -> None:
    """Show sheets and income/expense totals for a month or date range."""
    from sheetbook.store import DateRange, MonthPeriod

    if year is not None and month is not None:
        period = MonthPeriod(year, month)
    elif start is not None and end is not None:
        try:
            period = DateRange(start.date(), end.date())
        except ValueError as e:
            raise click.ClickException(str(e))
    else:
        raise click.ClickException("Give --year and --month, or --start and --end")

    svc = _service(directory)
    result = svc.monthly_view(_owner(svc, owner), period)
    if as_json:
        _echo_json(result.to_dict())
        return
    if not result.groups:
        click.echo("No data for this period.")
        return
    for g in result.groups:
        click.echo(
            f"{g.name}: {g.row_count} rows  income {g.income_total:,.2f}  expense {g.expense_total:,.2f}"
        )
        click.echo(f"  columns: {', '.join(g.column_schema)}")
    click.echo(
        f"Total: {result.total_sheets} sheet(s), {result.total_records} rows, "
        f"income {result.total_income:,.2f}, expense {result.total_expense:,.2f}"
    )


@main.command()
@project_option
@owner_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def periods(directory: str, owner: str | None, as_json: bool) -> None:
    """List stored periods."""
    svc = _service(directory)
    rows = svc.list_periods(_owner(svc, owner))
    if as_json:
        _echo_json(rows)
        return
    if not rows:
        click.echo("No periods stored.")
        return
    for p in rows:
        click.echo(f"{p['targetMonth']}  {p['sheets']} sheet(s)  {p['rows']} rows  {p['fileName']}  {p['importedAt']}")


@main.command("delete-period")
@click.option("--year", type=int, required=True, help="Period year.")
@click.option("--month", type=click.IntRange(1, 12), required=True, help="Period month.")
@project_option
@owner_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def delete_period(year: int, month: int, directory: str, owner: str | None, yes: bool) -> None:
    """Delete every stored row of one period."""
    from sheetbook.store import MonthPeriod

    try:
        period = MonthPeriod(year, month)
    except ValueError as e:
        raise click.ClickException(str(e))
    svc = _service(directory)
    owner_id = _owner(svc, owner)
    if not yes:
        stored = svc.store.count_rows(owner_id, period)
        click.confirm(f"Delete {stored} stored row(s) for {year:04d}-{month:02d}?", abort=True)
    deleted = svc.delete_period(owner_id, year, month)
    click.echo(f"Deleted {deleted} row(s) from {year:04d}-{month:02d}")


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------


@main.command()
@project_option
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--port", type=int, default=8000, help="Port.")
def serve(directory: str, host: str, port: int) -> None:
    """Run the HTTP API for a project."""
    import uvicorn

    from sheetbook.server import create_app

    app = create_app(Path(directory))
    click.echo(f"Serving API at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    except KeyboardInterrupt:
        click.echo("\nStopped.")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@project_option
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@owner_option
@click.option("--import-id", default=None, help="Show the log of one import.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    directory: str,
    level: str | None,
    event_type: str | None,
    owner: str | None,
    import_id: str | None,
    limit: int,
) -> None:
    """Show the structured event log."""
    from sheetbook.logging.sink import EventSink

    sink = EventSink(Path(directory))
    if import_id:
        events = sink.read_import_log(import_id)[-limit:]
    else:
        events = sink.read_global(level=level, event_type=event_type, owner_id=owner, limit=limit)

    if not events:
        click.echo("No events found.")
        return

    for evt in events:
        ts = evt.get("ts", "")
        lvl = evt.get("level", "").upper()
        etype = evt.get("event_type", "")
        msg = evt.get("message", "")
        err = evt.get("error_code")
        line = f"[{ts}] {lvl:7s} {etype}: {msg}"
        if err:
            line += f"  ({err})"
        click.echo(line)
