"""Tests for period-slot persistence."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import date
from pathlib import Path

import pytest

from sheetbook.store import (
    DateRange,
    ImportRow,
    ImportSheet,
    MonthPeriod,
    PeriodStore,
    TagMapping,
    resolve_tags,
)


@pytest.fixture
def store(tmp_path: Path) -> PeriodStore:
    return PeriodStore(tmp_path / "sheetbook.db")


def _sheet(name: str, n: int, **kw) -> ImportSheet:
    return ImportSheet.from_records(name, ["名称", "金额"], [{"名称": f"r{i}", "金额": i} for i in range(n)], **kw)


class TestPeriods:
    def test_month_period_key_and_bounds(self):
        p = MonthPeriod(2024, 5)
        assert p.key == "2024-05"
        assert p.bounds() == (202405, 202405)

    def test_month_out_of_range(self):
        with pytest.raises(ValueError):
            MonthPeriod(2024, 13)

    def test_date_range_bounds(self):
        r = DateRange(date(2023, 11, 20), date(2024, 2, 3))
        assert r.bounds() == (202311, 202402)

    def test_date_range_order(self):
        with pytest.raises(ValueError):
            DateRange(date(2024, 2, 1), date(2024, 1, 1))


class TestImportPeriod:
    def test_persists_rows_with_metadata(self, store):
        result = store.import_period("u1", [_sheet("账单", 3)], 2024, 5, file_name="may.xlsx")
        assert result.imported_sheet_count == 1
        assert result.total_sheets_attempted == 1
        assert result.target_month_key == "2024-05"

        rows = store.load_rows("u1", MonthPeriod(2024, 5))
        assert [r.original_index for r in rows] == [0, 1, 2]
        assert rows[0].snapshot == {"名称": "r0", "金额": 0}
        assert rows[0].sheet_name == "账单"
        assert rows[0].file_name == "may.xlsx"
        assert rows[0].import_id == result.import_id
        assert rows[0].imported_at.endswith("Z")

    def test_reimport_replaces_slot(self, store):
        store.import_period("u1", [_sheet("A", 4), _sheet("B", 2)], 2024, 5)
        store.import_period("u1", [_sheet("C", 1)], 2024, 5)
        rows = store.load_rows("u1", MonthPeriod(2024, 5))
        assert {r.sheet_name for r in rows} == {"C"}
        assert len(rows) == 1

    def test_same_import_twice_is_idempotent(self, store):
        sheets = [_sheet("A", 4), _sheet("B", 2)]
        store.import_period("u1", sheets, 2024, 5)
        store.import_period("u1", sheets, 2024, 5)
        assert store.count_rows("u1", MonthPeriod(2024, 5)) == 6

    def test_slots_are_isolated(self, store):
        store.import_period("u1", [_sheet("A", 2)], 2024, 5)
        store.import_period("u1", [_sheet("A", 3)], 2024, 6)
        store.import_period("u2", [_sheet("A", 4)], 2024, 5)
        store.import_period("u1", [_sheet("A", 1)], 2024, 5)
        assert store.count_rows("u1", MonthPeriod(2024, 5)) == 1
        assert store.count_rows("u1", MonthPeriod(2024, 6)) == 3
        assert store.count_rows("u2", MonthPeriod(2024, 5)) == 4

    def test_rows_are_capped_per_sheet(self, tmp_path):
        store = PeriodStore(tmp_path / "db.sqlite", max_rows_per_sheet=10)
        result = store.import_period("u1", [_sheet("big", 25), _sheet("small", 3)], 2024, 1)
        big, small = result.per_sheet
        assert (big.original_count, big.persisted_count, big.truncated) == (25, 10, True)
        assert (small.original_count, small.persisted_count, small.truncated) == (3, 3, False)
        assert store.count_rows("u1", MonthPeriod(2024, 1)) == 13

    def test_failed_sheet_is_skipped(self, store):
        bad = ImportSheet("坏表", ["x"], [ImportRow(values={"x": object()})])
        result = store.import_period("u1", [_sheet("A", 2), bad, _sheet("B", 1)], 2024, 5)
        assert result.imported_sheet_count == 2
        assert result.total_sheets_attempted == 3
        failed = result.per_sheet[1]
        assert failed.ok is False
        assert failed.persisted_count == 0
        assert failed.error
        rows = store.load_rows("u1", MonthPeriod(2024, 5))
        assert {r.sheet_name for r in rows} == {"A", "B"}

    def test_blank_sheet_name_fails_that_sheet(self, store):
        result = store.import_period("u1", [_sheet("  ", 1), _sheet("ok", 1)], 2024, 5)
        assert [s.ok for s in result.per_sheet] == [False, True]

    def test_result_to_dict(self, store):
        result = store.import_period("u1", [_sheet("A", 2)], 2024, 3)
        data = result.to_dict()
        assert data["importedCount"] == 1
        assert data["totalSheets"] == 1
        assert data["targetMonth"] == "2024-03"
        assert data["perSheetSummaries"][0]["persistedCount"] == 2

    def test_invalid_month_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.import_period("u1", [_sheet("A", 1)], 2024, 0)

    def test_concurrent_imports_leave_one_complete_state(self, store):
        errors: list[BaseException] = []

        def run(n: int) -> None:
            try:
                store.import_period("u1", [_sheet(f"S{n}", n)], 2024, 7)
            except BaseException as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=run, args=(n,)) for n in (3, 5, 7, 9)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        rows = store.load_rows("u1", MonthPeriod(2024, 7))
        assert len({r.import_id for r in rows}) == 1
        sheet = rows[0].sheet_name
        assert len(rows) == int(sheet[1:])


class TestTags:
    def test_tags_from_record_keys(self):
        sheet = ImportSheet.from_records(
            "汇总表",
            None,
            [{"项目": "房租", "_amount": -6000, "_flow_type": "支出", "_occurred_on": date(2024, 5, 3)}],
        )
        row = sheet.rows[0]
        assert sheet.columns == ["项目"]
        assert row.values == {"项目": "房租"}
        assert (row.amount, row.flow_type, row.occurred_on) == (-6000.0, "支出", "2024-05-03")

    def test_tags_from_mapping(self):
        mapping = TagMapping(amount_column="金额", flow_type_column="类型", date_column="日期")
        row = ImportRow(values={"金额": "1,800", "类型": "收入", "日期": "2024-05-09"})
        assert resolve_tags(row, mapping) == (1800.0, "收入", "2024-05-09")

    def test_explicit_row_tags_win(self):
        mapping = TagMapping(amount_column="金额")
        row = ImportRow(values={"金额": 5}, amount=7.0)
        assert resolve_tags(row, mapping)[0] == 7.0

    def test_non_numeric_amount_is_untagged(self):
        mapping = TagMapping(amount_column="金额")
        row = ImportRow(values={"金额": "待定"})
        assert resolve_tags(row, mapping) == (None, None, None)

    def test_amount_tag_with_thousands_separator(self, store):
        sheet = ImportSheet.from_records("汇总表", None, [{"项目": "房租", "_amount": "-6,000", "_flow_type": "支出"}])
        store.import_period("u1", [sheet], 2024, 5)
        (row,) = store.load_rows("u1", MonthPeriod(2024, 5))
        assert row.amount == -6000.0

    def test_non_numeric_amount_tag_fails_only_that_sheet(self, store):
        bad = ImportSheet.from_records("bad", None, [{"项目": "杂项", "_amount": "n/a"}])
        result = store.import_period("u1", [bad, _sheet("good", 2)], 2024, 5)
        assert [(s.name, s.ok) for s in result.per_sheet] == [("bad", False), ("good", True)]
        assert "not numeric" in result.per_sheet[0].error
        assert store.count_rows("u1", MonthPeriod(2024, 5)) == 2

    def test_blank_amount_tag_is_untagged(self):
        row = ImportRow(values={}, amount="  ")
        assert resolve_tags(row, None) == (None, None, None)

    def test_tags_are_persisted(self, store):
        sheet = ImportSheet.from_records(
            "流水", ["摘要", "金额", "类型"],
            [{"摘要": "工资", "金额": 2500, "类型": "收入"}],
            tags=TagMapping(amount_column="金额", flow_type_column="类型"),
        )
        store.import_period("u1", [sheet], 2024, 5)
        (row,) = store.load_rows("u1", MonthPeriod(2024, 5))
        assert (row.amount, row.flow_type, row.occurred_on) == (2500.0, "收入", None)


class TestReadsAndDeletes:
    def test_date_range_spans_months(self, store):
        store.import_period("u1", [_sheet("A", 1)], 2023, 12)
        store.import_period("u1", [_sheet("B", 2)], 2024, 1)
        store.import_period("u1", [_sheet("C", 3)], 2024, 3)
        rows = store.load_rows("u1", DateRange(date(2023, 12, 31), date(2024, 1, 1)))
        assert [r.sheet_name for r in rows] == ["A", "B", "B"]

    def test_list_periods(self, store):
        store.import_period("u1", [_sheet("A", 2), _sheet("B", 3)], 2024, 5, file_name="may.xlsx")
        store.import_period("u1", [_sheet("A", 1)], 2024, 6, file_name="jun.xlsx")
        periods = store.list_periods("u1")
        assert [p["targetMonth"] for p in periods] == ["2024-06", "2024-05"]
        assert periods[1]["sheets"] == 2
        assert periods[1]["rows"] == 5
        assert periods[1]["fileName"] == "may.xlsx"
        assert store.list_periods("nobody") == []

    def test_delete_period(self, store):
        store.import_period("u1", [_sheet("A", 2)], 2024, 5)
        assert store.delete_period("u1", 2024, 5) == 2
        assert store.load_rows("u1", MonthPeriod(2024, 5)) == []
        assert store.list_periods("u1") == []

    def test_delete_sheet(self, store):
        store.import_period("u1", [_sheet("A", 2), _sheet("B", 1)], 2024, 5)
        assert store.delete_sheet("u1", 2024, 5, "A") == 2
        rows = store.load_rows("u1", MonthPeriod(2024, 5))
        assert [r.sheet_name for r in rows] == ["B"]

    def test_snapshot_is_json(self, store):
        store.import_period("u1", [_sheet("A", 1)], 2024, 5)
        conn = sqlite3.connect(str(store.db_path))
        try:
            (raw,) = conn.execute("SELECT snapshot FROM persisted_rows").fetchone()
        finally:
            conn.close()
        assert json.loads(raw) == {"名称": "r0", "金额": 0}
