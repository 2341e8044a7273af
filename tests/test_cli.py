"""Tests for the click command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from sheetbook.cli import main

LEDGER = [["项目", "金额", "类型"], ["房租", -6000, "支出"], ["工资", 2500, "收入"], ["奖金", 1800, "收入"]]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _import(runner, project_dir: Path, path: Path, *extra: str):
    return runner.invoke(
        main,
        ["import", str(path), "--year", "2024", "--month", "5", "--project", str(project_dir), *extra],
    )


class TestInit:
    def test_init_scaffolds(self, runner, tmp_path):
        result = runner.invoke(main, ["init", str(tmp_path / "new")])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "new" / "sheetbook.yaml").exists()

    def test_init_refuses_existing(self, runner, project_dir):
        result = runner.invoke(main, ["init", str(project_dir)])
        assert result.exit_code != 0
        assert "already exists" in result.output


class TestInspectExport:
    def test_inspect(self, runner, project_dir, make_xlsx, price_matrix):
        path = make_xlsx({"进货": price_matrix, "空": [[None]]})
        result = runner.invoke(main, ["inspect", str(path), "--project", str(project_dir)])
        assert result.exit_code == 0, result.output
        assert "进货: 5 rows" in result.output
        assert "columns: 商品, 单价, 数量" in result.output
        assert "first row: 苹果 | 3.5 | 10" in result.output

    def test_inspect_json(self, runner, project_dir, make_xlsx, price_matrix):
        path = make_xlsx({"进货": price_matrix})
        result = runner.invoke(main, ["inspect", str(path), "--project", str(project_dir), "--json"])
        data = json.loads(result.output)
        assert data["sheets"][0]["numericColumns"] == ["单价", "数量"]

    def test_export_with_calc(self, runner, project_dir, make_xlsx, price_matrix, tmp_path):
        from sheetbook.xlsx_io import read_workbook

        path = make_xlsx({"进货": price_matrix})
        out = tmp_path / "out.xlsx"
        result = runner.invoke(
            main,
            ["export", str(path), str(out), "--project", str(project_dir), "--calc", "总价 = 单价 * 数量"],
        )
        assert result.exit_code == 0, result.output
        sheet = read_workbook(out)["进货"]
        assert sheet[0] == ["商品", "单价", "数量", "总价"]
        assert sheet[1] == ["苹果", 3.5, 10, 35]

    def test_export_bad_calc(self, runner, project_dir, make_xlsx, price_matrix, tmp_path):
        path = make_xlsx({"进货": price_matrix})
        result = runner.invoke(
            main,
            ["export", str(path), str(tmp_path / "o.xlsx"), "--project", str(project_dir), "--calc", "总价 = 单价 * 件数"],
        )
        assert result.exit_code != 0
        assert "进货" in result.output


class TestImportView:
    def test_import_then_view(self, runner, project_dir, make_xlsx):
        path = make_xlsx({"流水": LEDGER})
        result = _import(runner, project_dir, path, "--amount-col", "金额", "--flow-col", "类型")
        assert result.exit_code == 0, result.output
        assert "Imported 1/1 sheet(s) into 2024-05" in result.output
        assert "流水: 3 rows" in result.output

        result = runner.invoke(main, ["view", "--year", "2024", "--month", "5", "--project", str(project_dir), "--json"])
        data = json.loads(result.output)
        assert data["summary"]["totalIncome"] == 4300
        assert data["summary"]["totalExpense"] == 6000

        result = runner.invoke(main, ["view", "--year", "2024", "--month", "5", "--project", str(project_dir)])
        assert "income 4,300.00" in result.output

    def test_import_unknown_sheet(self, runner, project_dir, make_xlsx):
        path = make_xlsx({"流水": LEDGER})
        result = _import(runner, project_dir, path, "--sheet", "nope")
        assert result.exit_code != 0
        assert "Unknown sheet" in result.output

    def test_view_empty_and_missing_period(self, runner, project_dir):
        result = runner.invoke(main, ["view", "--year", "2030", "--month", "1", "--project", str(project_dir)])
        assert "No data for this period." in result.output
        result = runner.invoke(main, ["view", "--project", str(project_dir)])
        assert result.exit_code != 0

    def test_view_date_range(self, runner, project_dir, make_xlsx):
        _import(runner, project_dir, make_xlsx({"流水": LEDGER}), "--amount-col", "金额", "--flow-col", "类型")
        result = runner.invoke(
            main,
            ["view", "--start", "2024-04-01", "--end", "2024-05-31", "--project", str(project_dir), "--json"],
        )
        assert json.loads(result.output)["totalRecords"] == 3

    def test_periods_and_delete(self, runner, project_dir, make_xlsx):
        result = runner.invoke(main, ["periods", "--project", str(project_dir)])
        assert "No periods stored." in result.output

        _import(runner, project_dir, make_xlsx({"流水": LEDGER}))
        result = runner.invoke(main, ["periods", "--project", str(project_dir), "--json"])
        assert json.loads(result.output)[0]["targetMonth"] == "2024-05"

        result = runner.invoke(
            main, ["delete-period", "--year", "2024", "--month", "5", "--project", str(project_dir), "--yes"]
        )
        assert "Deleted 3 row(s) from 2024-05" in result.output

    def test_delete_period_confirmation_shows_stored_row_count(self, runner, project_dir, make_xlsx):
        _import(runner, project_dir, make_xlsx({"流水": LEDGER}))
        result = runner.invoke(
            main, ["delete-period", "--year", "2024", "--month", "5", "--project", str(project_dir)], input="y\n"
        )
        assert result.exit_code == 0, result.output
        assert "Delete 3 stored row(s) for 2024-05?" in result.output
        assert "Deleted 3 row(s) from 2024-05" in result.output

    def test_delete_period_can_be_aborted(self, runner, project_dir):
        result = runner.invoke(
            main, ["delete-period", "--year", "2024", "--month", "5", "--project", str(project_dir)], input="n\n"
        )
        assert result.exit_code != 0


class TestEvents:
    def test_events_after_import(self, runner, project_dir, make_xlsx):
        result = _import(runner, project_dir, make_xlsx({"流水": LEDGER}))
        assert result.exit_code == 0, result.output
        result = runner.invoke(main, ["events", "--project", str(project_dir), "--type", "import_completed"])
        assert "import_completed" in result.output

    def test_no_events(self, runner, tmp_path):
        result = runner.invoke(main, ["events", "--project", str(tmp_path)])
        assert "No events found." in result.output
