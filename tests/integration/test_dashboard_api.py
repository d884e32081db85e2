"""
Integration Tests - Sales Dashboard & COGS API
==============================================
Admin-only analytics, CSV export, comparison periods and cost management.
"""

import httpx
import pytest

from conftest import MockUpstream

ITEM_ROWS = [
    {"item_id": "MLA1", "title": "Remera, algodón", "item_orders": 2, "item_sales": 1000,
     "net_profit": 200},
]


def _daily_by_start(request: httpx.Request) -> httpx.Response:
    start = MockUpstream.body(request)["start_date"]
    sales = 200 if start == "2026-10-08" else 100
    return httpx.Response(200, json=[
        {"date": start, "total_sales": sales, "net_profit": sales / 10, "total_units": 1},
    ])


class TestAnalytics:

    @pytest.mark.integration
    def test_manager_forbidden(self, client, member):
        member(role="manager")
        response = client.get("/api/analytics/items")
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    @pytest.mark.integration
    def test_item_sales(self, client, member, db_upstream):
        member()
        db_upstream.respond("POST", "/rest/v1/rpc/get_item_sales_aggregated", ITEM_ROWS)
        db_upstream.respond("GET", "/rest/v1/cogs", [{"item_id": "MLA1", "cogs": 50}])

        response = client.get("/api/analytics/items", params={
            "start": "2026-10-01", "end": "2026-10-07", "item_ids": "MLA1, ,MLA2",
        })

        body = response.json()
        assert body["range"] == {"start": "2026-10-01", "end": "2026-10-07"}
        assert body["data"][0]["unit_cogs"] == 50
        rpc = MockUpstream.body(db_upstream.calls("POST")[0])
        assert rpc["org_id"] == "org-1"
        assert rpc["item_ids"] == ["MLA1", "MLA2"]

    @pytest.mark.integration
    def test_daily_range_limit(self, client, member, db_upstream):
        member()
        response = client.get("/api/analytics/daily", params={
            "start": "2026-08-01", "end": "2026-10-01", "period": "day",
        })

        assert response.status_code == 400
        assert response.json()["message"] == "Daily view limited to 30 days"
        assert db_upstream.calls("POST") == []

    @pytest.mark.integration
    def test_daily_totals(self, client, member, db_upstream):
        member()
        db_upstream.respond("POST", "/rest/v1/rpc/get_total_sales_aggregated", [
            {"date": "2026-10-01", "total_sales": 1000, "net_profit": 100},
            {"date": "2026-10-02", "total_sales": 1000, "net_profit": 300},
        ])

        body = client.get("/api/analytics/daily", params={
            "start": "2026-10-01", "end": "2026-10-02",
        }).json()

        assert body["totals"]["total_sales"] == 2000
        assert body["totals"]["profit_margin"] == 20.0

    @pytest.mark.integration
    def test_previous_period_comparison(self, client, member, db_upstream):
        member()
        db_upstream.respond("POST", "/rest/v1/rpc/get_item_sales_aggregated", [])
        db_upstream.handle("POST", "/rest/v1/rpc/get_total_sales_aggregated", _daily_by_start)
        db_upstream.respond("GET", "/rest/v1/cogs", [])

        body = client.get("/api/analytics/comparison", params={
            "start": "2026-10-08", "end": "2026-10-14", "comparison_type": "previous_period",
        }).json()

        assert body["comparison_range"] == {"start": "2026-10-01", "end": "2026-10-07"}
        assert body["label"] == "Previous Period (Oct 1, 2026 - Oct 7, 2026)"
        assert body["deltas"]["total_sales"] == {"absolute": 100.0, "percentage": 100.0}
        assert body["chart"][0]["label"] == "Day 1"
        assert body["chart"][0]["base_total_sales"] == 200
        assert body["chart"][0]["comparison_total_sales"] == 100

    @pytest.mark.integration
    def test_export_items_csv(self, client, member, db_upstream):
        member()
        db_upstream.respond("POST", "/rest/v1/rpc/get_item_sales_aggregated", ITEM_ROWS)
        db_upstream.respond("GET", "/rest/v1/cogs", [])

        response = client.get("/api/analytics/export", params={
            "start": "2026-10-01", "end": "2026-10-07",
        })

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"].startswith('attachment; filename="item_sales_')
        header, first = response.text.split("\n")[:2]
        assert header.startswith("Item ID,Title,Orders,Units,Sales")
        assert first.startswith('MLA1,"Remera, algodón",')


class TestCogs:
    """Cost-of-goods CRUD and spreadsheet import."""

    @pytest.mark.integration
    def test_template(self, client):
        response = client.get("/api/cogs/template")
        lines = response.text.split("\n")
        assert lines[0] == "item_id,title,cogs,tags"
        assert lines[1] == 'MLB123456789,Sample Product 1,100.50,"electronics,imported"'
        assert 'filename="cogs_template.csv"' in response.headers["content-disposition"]

    @pytest.mark.integration
    def test_bulk_update(self, client, member, db_upstream):
        member()
        db_upstream.handle("POST", "/rest/v1/cogs",
                           lambda r: httpx.Response(201, json=MockUpstream.body(r)))

        response = client.post("/api/cogs/bulk", json={"items": [
            {"item_id": "MLA1", "cogs": "10.5"},
            {"item_id": "MLA2", "cogs": -3},
            {"title": "sin id"},
        ]})

        body = response.json()
        assert body["processed"] == 2
        assert body["valid_items"] == 2
        assert body["total"] == 3
        assert body["errors"][0]["index"] == 2
        upserted = MockUpstream.body(db_upstream.calls("POST", "/rest/v1/cogs")[0])
        assert [row["cogs"] for row in upserted] == [10.5, 0.0]
        assert all(row["organization_id"] == "org-1" for row in upserted)

    @pytest.mark.integration
    def test_csv_upload(self, client, member, db_upstream):
        member()
        db_upstream.handle("POST", "/rest/v1/cogs",
                           lambda r: httpx.Response(201, json=MockUpstream.body(r)))
        content = "SKU,Product Name,Cost\nMLA1,Remera,12\n".encode("utf-8")

        response = client.post(
            "/api/cogs/upload", files={"file": ("costos.csv", content, "text/csv")}
        )

        assert response.status_code == 200
        assert response.json()["data"][0]["item_id"] == "MLA1"

    @pytest.mark.integration
    def test_unsupported_upload(self, client, member):
        member()
        response = client.post(
            "/api/cogs/upload", files={"file": ("costos.pdf", b"%PDF", "application/pdf")}
        )
        assert response.status_code == 400
        assert response.json()["message"].startswith("Unsupported file format")

    @pytest.mark.integration
    def test_legacy_xls_upload_rejected(self, client, member, db_upstream):
        member()
        response = client.post(
            "/api/cogs/upload",
            files={"file": ("cogs.xls", b"\xd0\xcf\x11\xe0", "application/vnd.ms-excel")},
        )
        assert response.status_code == 400
        assert response.json()["message"].startswith("Legacy .xls workbooks are not supported")
        assert db_upstream.calls("POST", "/rest/v1/cogs") == []

    @pytest.mark.integration
    def test_single_update(self, client, member, db_upstream):
        member()
        db_upstream.respond("PATCH", "/rest/v1/cogs", [{"item_id": "MLA1", "cogs": 99}])

        response = client.patch("/api/cogs/MLA1", json={"cogs": "99"})

        assert response.json() == {"item_id": "MLA1", "cogs": 99.0}
        params = MockUpstream.params(db_upstream.calls("PATCH")[0])
        assert ("organization_id", "eq.org-1") in params
        assert ("item_id", "eq.MLA1") in params
