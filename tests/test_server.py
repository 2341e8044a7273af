"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def client(project_dir: Path):
    from fastapi.testclient import TestClient

    from sheetbook.server import create_app

    return TestClient(create_app(project_dir))


LEDGER = {
    "fileName": "may.xlsx",
    "targetYear": 2024,
    "targetMonth": 5,
    "sheets": [
        {
            "name": "汇总表",
            "rows": [
                {"项目": "房租", "金额": -6000, "_amount": -6000, "_flow_type": "支出"},
                {"项目": "工资", "金额": 2500, "_amount": 2500, "_flow_type": "收入"},
                {"项目": "奖金", "金额": 1800, "_amount": 1800, "_flow_type": "收入"},
            ],
        },
        {
            "name": "明细",
            "rows": [{"日期": "2024-05-01", "金额": "88", "类型": "支出"}],
            "tags": {"amountColumn": "金额", "flowTypeColumn": "类型"},
        },
    ],
}


def _upload(client, make_xlsx, sheets, owner: str | None = None) -> dict:
    path = make_xlsx(sheets)
    headers = {"X-Owner-Id": owner} if owner else {}
    with open(path, "rb") as fh:
        resp = client.post(
            "/api/workbooks",
            files={"file": ("book.xlsx", fh, "application/octet-stream")},
            headers=headers,
        )
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestTableData:
    def test_import_and_monthly_view(self, client) -> None:
        resp = client.post("/api/table-data/import", json=LEDGER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["importedCount"] == 2
        assert body["totalSheets"] == 2
        assert body["targetMonth"] == "2024-05"

        view = client.get("/api/table-data/monthly", params={"targetYear": 2024, "targetMonth": 5}).json()
        assert view["summary"] == {"totalIncome": 4300, "totalExpense": 6088, "totalCount": 4}
        assert [s["name"] for s in view["sheets"]] == ["汇总表", "明细"]
        assert view["allSheets"]["rowCount"] == 4

    def test_bad_amount_fails_only_its_sheet(self, client) -> None:
        payload = {
            "targetYear": 2024,
            "targetMonth": 5,
            "sheets": [
                {"name": "good", "rows": [{"项目": "工资", "_amount": 5, "_flow_type": "收入"}]},
                {"name": "comma", "rows": [{"项目": "房租", "_amount": "-6,000", "_flow_type": "支出"}]},
                {"name": "bad", "rows": [{"项目": "杂项", "_amount": "n/a", "_flow_type": "支出"}]},
            ],
        }
        resp = client.post("/api/table-data/import", json=payload)
        assert resp.status_code == 200
        body = resp.json()
        assert body["importedCount"] == 2
        assert body["totalSheets"] == 3
        status = {s["name"]: s["ok"] for s in body["perSheetSummaries"]}
        assert status == {"good": True, "comma": True, "bad": False}

        view = client.get("/api/table-data/monthly", params={"targetYear": 2024, "targetMonth": 5}).json()
        assert view["summary"] == {"totalIncome": 5, "totalExpense": 6000, "totalCount": 2}

    def test_reimport_replaces(self, client) -> None:
        client.post("/api/table-data/import", json=LEDGER)
        smaller = dict(LEDGER, sheets=LEDGER["sheets"][1:])
        client.post("/api/table-data/import", json=smaller)
        view = client.get("/api/table-data/monthly", params={"targetYear": 2024, "targetMonth": 5}).json()
        assert view["totalRecords"] == 1

    def test_owners_are_isolated(self, client) -> None:
        client.post("/api/table-data/import", json=LEDGER, headers={"X-Owner-Id": "alice"})
        mine = client.get(
            "/api/table-data/monthly", params={"targetYear": 2024, "targetMonth": 5},
            headers={"X-Owner-Id": "alice"},
        ).json()
        theirs = client.get(
            "/api/table-data/monthly", params={"targetYear": 2024, "targetMonth": 5},
            headers={"X-Owner-Id": "bob"},
        ).json()
        assert mine["totalRecords"] == 4
        assert theirs["totalRecords"] == 0
        assert theirs["sheets"] == []

    def test_date_range_view(self, client) -> None:
        client.post("/api/table-data/import", json=LEDGER)
        view = client.get(
            "/api/table-data/monthly", params={"startDate": "2024-05-15", "endDate": "2024-06-30"}
        ).json()
        assert view["totalRecords"] == 4

    def test_monthly_requires_a_period(self, client) -> None:
        resp = client.get("/api/table-data/monthly", params={"targetYear": 2024})
        assert resp.status_code == 400

    def test_bad_date_range(self, client) -> None:
        resp = client.get("/api/table-data/monthly", params={"startDate": "2024-06-01", "endDate": "2024-05-01"})
        assert resp.status_code == 400

    def test_invalid_month_rejected(self, client) -> None:
        resp = client.post("/api/table-data/import", json=dict(LEDGER, targetMonth=13))
        assert resp.status_code == 422

    def test_periods_and_delete(self, client) -> None:
        client.post("/api/table-data/import", json=LEDGER)
        periods = client.get("/api/table-data/periods").json()
        assert periods[0]["targetMonth"] == "2024-05"
        assert periods[0]["fileName"] == "may.xlsx"

        resp = client.delete("/api/table-data/2024/5/sheets/明细")
        assert resp.json() == {"deletedCount": 1}
        resp = client.delete("/api/table-data/2024/5")
        assert resp.json() == {"deletedCount": 3}
        assert client.get("/api/table-data/periods").json() == []


class TestWorkbooks:
    def test_upload_and_read(self, client, make_xlsx, price_matrix) -> None:
        summary = _upload(client, make_xlsx, {"进货": price_matrix})
        wid = summary["workbookId"]
        assert summary["sheets"][0]["rowCount"] == 5

        listed = client.get("/api/workbooks").json()
        assert [w["workbookId"] for w in listed] == [wid]

        sheet = client.get(f"/api/workbooks/{wid}/sheets/进货").json()
        assert sheet["rows"][0]["values"]["商品"] == "苹果"
        assert sheet["numericColumns"] == ["单价", "数量"]

    def test_upload_rejects_unknown_type(self, client) -> None:
        resp = client.post("/api/workbooks", files={"file": ("notes.txt", b"hi", "text/plain")})
        assert resp.status_code == 400

    def test_workbooks_are_owner_scoped(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix}, owner="alice")["workbookId"]
        resp = client.get(f"/api/workbooks/{wid}", headers={"X-Owner-Id": "bob"})
        assert resp.status_code == 404

    def test_edit_flow(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        base = f"/api/workbooks/{wid}/sheets/进货"

        resp = client.post(f"{base}/calculated", json={"title": "总价", "operandA": "单价", "operandB": "数量", "operator": "*"})
        assert resp.status_code == 200

        row = client.post(f"{base}/rows").json()
        assert row["key"] == 5
        resp = client.patch(f"{base}/rows/5", json={"values": {"单价": 2, "数量": 3}})
        assert resp.json()["values"]["总价"] == 6

        resp = client.patch(f"{base}/rows/5", json={"values": {"总价": 1}})
        assert resp.status_code == 400
        assert resp.json()["error"] == "CalculatedColumnError"

        resp = client.post(f"{base}/reorder", json={"axis": "rows", "fromIndex": 5, "toIndex": 0})
        assert [r["key"] for r in resp.json()["rows"]][:2] == [5, 0]

        assert client.delete(f"{base}/rows/0").status_code == 200
        assert client.delete(f"{base}/rows/0").status_code == 404

    def test_formula_text_and_cycle(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        base = f"/api/workbooks/{wid}/sheets/进货"
        client.post(f"{base}/calculated", json={"formula": "总价 = 单价 × 数量"})
        client.post(f"{base}/calculated", json={"formula": "含税 = 总价 + 数量"})
        resp = client.put(f"{base}/calculated/总价", json={"formula": "含税 - 数量"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "CyclicFormulaError"

    def test_duplicate_column_conflict(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        resp = client.post(f"/api/workbooks/{wid}/sheets/进货/columns", json={"title": "单价"})
        assert resp.status_code == 409

    def test_edit_session_endpoints(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        base = f"/api/workbooks/{wid}/sheets/进货"

        assert client.post(f"{base}/edit/1").json()["values"]["商品"] == "香蕉"
        assert client.post(f"{base}/edit/2").status_code == 409
        client.patch(f"{base}/edit", json={"values": {"数量": 60}})
        committed = client.post(f"{base}/edit/commit").json()
        assert committed["values"]["数量"] == 60
        assert client.post(f"{base}/edit/commit").status_code == 409

    def test_save_reset(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        client.patch(f"/api/workbooks/{wid}/sheets/进货/rows/0", json={"values": {"单价": 1}})
        assert client.post(f"/api/workbooks/{wid}/reset").json() == {"reset": ["进货"]}
        sheet = client.get(f"/api/workbooks/{wid}/sheets/进货").json()
        assert sheet["rows"][0]["values"]["单价"] == 3.5
        assert client.post(f"/api/workbooks/{wid}/save", json={"sheet": "进货"}).json() == {"saved": ["进货"]}

    def test_import_workbook(self, client, make_xlsx) -> None:
        ledger = [["项目", "金额", "类型"], ["房租", -6000, "支出"], ["工资", 2500, "收入"]]
        wid = _upload(client, make_xlsx, {"流水": ledger})["workbookId"]
        resp = client.post(
            f"/api/workbooks/{wid}/import",
            json={
                "targetYear": 2024,
                "targetMonth": 7,
                "tags": {"流水": {"amountColumn": "金额", "flowTypeColumn": "类型"}},
            },
        )
        assert resp.json()["importedCount"] == 1
        view = client.get("/api/table-data/monthly", params={"targetYear": 2024, "targetMonth": 7}).json()
        assert view["summary"]["totalIncome"] == 2500
        assert view["summary"]["totalExpense"] == 6000

    def test_export(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        resp = client.get(f"/api/workbooks/{wid}/export")
        assert resp.status_code == 200
        assert resp.content[:2] == b"PK"

    def test_close(self, client, make_xlsx, price_matrix) -> None:
        wid = _upload(client, make_xlsx, {"进货": price_matrix})["workbookId"]
        assert client.delete(f"/api/workbooks/{wid}").status_code == 200
        assert client.get(f"/api/workbooks/{wid}").status_code == 404


class TestEvents:
    def test_events_endpoint(self, client) -> None:
        client.post("/api/table-data/import", json=LEDGER)
        events = client.get("/api/events", params={"limit": 5}).json()
        assert events[0]["event_type"] == "import_completed"
        assert all(e["context"]["owner_id"] == "local" for e in events)
