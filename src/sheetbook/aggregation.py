"""Reconstruct per-sheet tables and income/expense totals for a period.

Views are derived on every call from the persisted rows and are never
stored.  Totals come from a Polars group-by over the absolute value of each
row's tagged amount, split by flow type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

import polars as pl

from sheetbook.formulas.engine import round_half_away
from sheetbook.logging import EventType, emit_info
from sheetbook.store import DateRange, MonthPeriod, Period, PeriodStore, PersistedRow

DEFAULT_INCOME_LABELS = ("收入", "income")
DEFAULT_EXPENSE_LABELS = ("支出", "expense")

ALL_SHEETS = "all_sheets"


@dataclass
class SheetGroup:
    name: str
    data: list[dict[str, Any]]
    column_schema: list[str]
    row_count: int
    income_total: float = 0.0
    expense_total: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "data": self.data,
            "columnSchema": self.column_schema,
            "rowCount": self.row_count,
            "incomeTotal": self.income_total,
            "expenseTotal": self.expense_total,
        }


@dataclass
class MonthlyView:
    groups: list[SheetGroup] = field(default_factory=list)
    total_income: float = 0.0
    total_expense: float = 0.0
    total_records: int = 0
    all_sheets: SheetGroup | None = None

    @property
    def total_sheets(self) -> int:
        return len(self.groups)

    def group(self, name: str) -> SheetGroup:
        for g in self.groups:
            if g.name == name:
                return g
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheets": [g.to_dict() for g in self.groups],
            "totalSheets": self.total_sheets,
            "totalRecords": self.total_records,
            "summary": {
                "totalIncome": self.total_income,
                "totalExpense": self.total_expense,
                "totalCount": self.total_records,
            },
            "allSheets": self.all_sheets.to_dict() if self.all_sheets is not None else None,
        }


def _normalize_label(label: Any) -> str:
    return str(label).strip().lower()


def _row_data(row: PersistedRow) -> dict[str, Any]:
    data = dict(row.snapshot)
    data["_sheet_name"] = row.sheet_name
    data["_original_index"] = row.original_index
    data["_amount"] = row.amount
    data["_flow_type"] = row.flow_type
    data["_occurred_on"] = row.occurred_on
    return data


def _schema(keys: Iterable[str], prefix: str) -> list[str]:
    if not prefix:
        return list(keys)
    return [k for k in keys if not k.startswith(prefix)]


def _totals(
    rows: list[PersistedRow],
    income_labels: Iterable[str],
    expense_labels: Iterable[str],
) -> dict[str, tuple[float, float]]:
    """(income, expense) per sheet name."""
    if not rows:
        return {}
    income = pl.Series([_normalize_label(label) for label in income_labels], dtype=pl.Utf8)
    expense = pl.Series([_normalize_label(label) for label in expense_labels], dtype=pl.Utf8)
    df = pl.DataFrame(
        {
            "sheet": [r.sheet_name for r in rows],
            "amount": [r.amount for r in rows],
            "flow": [_normalize_label(r.flow_type) if r.flow_type is not None else None for r in rows],
        },
        schema={"sheet": pl.Utf8, "amount": pl.Float64, "flow": pl.Utf8},
    )
    sums = (
        df.with_columns(pl.col("amount").abs().fill_null(0.0))
        .group_by("sheet")
        .agg(
            pl.col("amount").filter(pl.col("flow").is_in(income)).sum().alias("income"),
            pl.col("amount").filter(pl.col("flow").is_in(expense)).sum().alias("expense"),
        )
    )
    return {
        rec["sheet"]: (float(rec["income"] or 0.0), float(rec["expense"] or 0.0))
        for rec in sums.to_dicts()
    }


def build_view(
    rows: list[PersistedRow],
    *,
    income_labels: Iterable[str] = DEFAULT_INCOME_LABELS,
    expense_labels: Iterable[str] = DEFAULT_EXPENSE_LABELS,
    internal_prefix: str = "_",
) -> MonthlyView:
    """Group persisted rows by sheet name and total them.

    Args:
        rows: Persisted rows in storage order.
        income_labels: Flow-type labels counted as income (case-insensitive).
        expense_labels: Flow-type labels counted as expense.
        internal_prefix: Snapshot keys with this prefix are left out of schemas.

    Returns:
        The view.  Groups are ordered by row count, largest first, ties
        keeping first appearance.
    """
    buckets: dict[str, list[PersistedRow]] = {}
    for row in rows:
        buckets.setdefault(row.sheet_name, []).append(row)

    totals = _totals(rows, income_labels, expense_labels)
    groups: list[SheetGroup] = []
    for name, members in buckets.items():
        income, expense = totals.get(name, (0.0, 0.0))
        groups.append(
            SheetGroup(
                name=name,
                data=[_row_data(r) for r in members],
                column_schema=_schema(members[0].snapshot.keys(), internal_prefix),
                row_count=len(members),
                income_total=round_half_away(income),
                expense_total=round_half_away(expense),
            )
        )
    # stable sort keeps first appearance among equal counts
    groups.sort(key=lambda g: -g.row_count)

    union: list[str] = []
    seen: set[str] = set()
    for g in groups:
        for title in g.column_schema:
            if title not in seen:
                seen.add(title)
                union.append(title)

    total_income = round_half_away(sum(g.income_total for g in groups))
    total_expense = round_half_away(sum(g.expense_total for g in groups))
    all_sheets = SheetGroup(
        name=ALL_SHEETS,
        data=[row for g in groups for row in g.data],
        column_schema=union,
        row_count=len(rows),
        income_total=total_income,
        expense_total=total_expense,
    )
    return MonthlyView(
        groups=groups,
        total_income=total_income,
        total_expense=total_expense,
        total_records=len(rows),
        all_sheets=all_sheets,
    )


def get_monthly_view(
    store: PeriodStore,
    owner_id: str,
    period: Period,
    *,
    income_labels: Iterable[str] = DEFAULT_INCOME_LABELS,
    expense_labels: Iterable[str] = DEFAULT_EXPENSE_LABELS,
    internal_prefix: str = "_",
) -> MonthlyView:
    """Read-only monthly (or date-range) view of an owner's persisted rows.

    An empty period yields a view with no groups and zero totals.
    """
    rows = store.load_rows(owner_id, period)
    view = build_view(
        rows,
        income_labels=income_labels,
        expense_labels=expense_labels,
        internal_prefix=internal_prefix,
    )
    emit_info(
        EventType.monthly_view,
        f"Built view of {view.total_records} row(s) in {view.total_sheets} sheet(s)",
        {"owner_id": owner_id, "period": describe_period(period)},
    )
    return view


def describe_period(period: Period) -> str:
    if isinstance(period, MonthPeriod):
        return period.key
    if isinstance(period, DateRange):
        return f"{period.start.isoformat()}..{period.end.isoformat()}"
    raise TypeError(f"not a period: {period!r}")
