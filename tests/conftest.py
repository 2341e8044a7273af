"""Shared fixtures for the sheetbook test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest


@pytest.fixture(autouse=True)
def _detach_event_sink():
    """Keep the module-level event sink from leaking between tests."""
    from sheetbook.logging import clear_sink

    clear_sink()
    yield
    clear_sink()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Scaffold an empty sheetbook project."""
    from sheetbook.project import scaffold_project

    return scaffold_project(tmp_path / "proj")


@pytest.fixture
def make_xlsx(tmp_path: Path):
    """Factory for creating XLSX files with openpyxl from row lists."""
    openpyxl = pytest.importorskip("openpyxl")

    def _make(sheets: dict[str, list[list[Any]]], filename: str = "book.xlsx") -> Path:
        wb = openpyxl.Workbook()
        first = True
        for sheet_name, rows in sheets.items():
            if first:
                ws = wb.active
                ws.title = sheet_name
                first = False
            else:
                ws = wb.create_sheet(sheet_name)
            for row in rows:
                ws.append(row)
        path = tmp_path / filename
        wb.save(str(path))
        wb.close()
        return path

    return _make


@pytest.fixture
def price_matrix() -> list[list[Any]]:
    """A five-row product sheet with a title row above the header."""
    return [
        ["2024年5月 进货明细", None, None],
        ["商品", "单价", "数量"],
        ["苹果", 3.5, 10],
        ["香蕉", 2, 6],
        ["橙子", 4.25, 4],
        ["梨", 5, 3],
        ["葡萄", 12.8, 2],
    ]
