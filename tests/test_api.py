"""
Tests for the HTTP surface.
"""

import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conciliacao.config import get_settings
from conciliacao.main import create_app


@pytest.fixture
def reports_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(get_settings(), "reports_dir", tmp_path)
    return tmp_path


@pytest.fixture
def client(reports_dir):
    with TestClient(create_app()) as client:
        yield client


def push(client, sales=(), settlements=(), terminal_id="T1"):
    if sales:
        response = client.post(f"/api/terminals/{terminal_id}/sales", json=list(sales))
        assert response.status_code == 201, response.text
    if settlements:
        response = client.post(f"/api/terminals/{terminal_id}/settlements", json=list(settlements))
        assert response.status_code == 201, response.text


def run(client, terminal_id="T1", period="2024-01", **config):
    response = client.post(
        f"/api/terminals/{terminal_id}/periods/{period}/runs",
        json=config or None,
    )
    return response


@pytest.fixture
def divergent(client):
    """One unmatched sale reconciled into a pending divergence."""
    push(client, sales=[{
        "id": "s1",
        "period": "2024-01",
        "sale_date": "2024-01-10",
        "gross_amount": "82.00",
        "net_amount": "80.00",
        "payment_method": "debito",
        "external_reference": "123456",
    }])
    response = run(client, value_tolerance="0", day_tolerance=1)
    assert response.json()["status"] == "completed"
    divergences = client.get("/api/divergences", params={"terminal_id": "T1"}).json()
    assert len(divergences) == 1
    return divergences[0]


class TestRecordsAndRuns:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_scenario_run(self, client):
        client.post("/api/terminals", json={"id": "T1", "name": "Loja", "processor": "rede"})
        push(
            client,
            sales=[{"id": "1", "period": "2024-01", "sale_date": "2024-01-10",
                    "gross_amount": "155.00", "net_amount": "150.00"}],
            settlements=[{"id": "1", "period": "2024-01", "settlement_date": "2024-01-11",
                          "amount": "150.00"}],
        )

        response = run(client, value_tolerance="0", day_tolerance=1)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["counts"]["matched_simple"] == 1
        assert body["counts"]["divergences_created"] == 0
        assert body["config"]["value_tolerance_cents"] == 0

        fetched = client.get(f"/api/runs/{body['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == body["id"]

    def test_run_with_default_config(self, client):
        response = run(client)

        assert response.status_code == 200
        assert response.json()["config"]["value_tolerance_cents"] == 100

    def test_invalid_config(self, client):
        response = run(client, day_tolerance=-1)

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "day_tolerance"

    def test_invalid_sale(self, client):
        response = client.post("/api/terminals/T1/sales", json=[{
            "period": "2024-01", "sale_date": "2024-01-10",
            "gross_amount": "10.00", "net_amount": "12.00",
        }])

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "records"

    def test_duplicate_records(self, client):
        sale = {"id": "s1", "period": "2024-01", "sale_date": "2024-01-10",
                "gross_amount": "10.00", "net_amount": "10.00"}
        push(client, sales=[sale])

        response = client.post("/api/terminals/T1/sales", json=[sale])

        assert response.status_code == 409

    def test_unknown_run(self, client):
        assert client.get("/api/runs/nope").status_code == 404


class TestDivergenceEndpoints:

    def test_listing_filters(self, client, divergent):
        pending = client.get("/api/divergences", params={"status": "pending"}).json()
        searched = client.get("/api/divergences", params={"search": "nsu 123456"}).json()
        missed = client.get("/api/divergences", params={"search": "nothing like it"}).json()

        assert [d["id"] for d in pending] == [divergent["id"]]
        assert [d["id"] for d in searched] == [divergent["id"]]
        assert missed == []
        assert divergent["kind"] == "sale_without_settlement"
        assert divergent["expected_value_cents"] == 8000

    def test_resolve_validation(self, client, divergent):
        response = client.post(
            f"/api/divergences/{divergent['id']}/resolve",
            json={"kind": "ajuste_manual", "motive": "fee", "adjustment_value": "0"},
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["field"] == "adjustment_value"
        assert detail["message"] == "adjustment value required"
        status = client.get("/api/divergences", params={"status": "pending"}).json()
        assert len(status) == 1

    def test_missing_motive(self, client, divergent):
        response = client.post(
            f"/api/divergences/{divergent['id']}/resolve",
            json={"kind": "justificativa"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "motive"

    def test_resolve_then_conflict(self, client, divergent):
        url = f"/api/divergences/{divergent['id']}/resolve"

        first = client.post(url, json={"kind": "ajuste_manual", "motive": "fee", "adjustment_value": "-2.50"})
        second = client.post(url, json={"kind": "exclusao", "motive": "again"})

        assert first.status_code == 200
        assert first.json()["status"] == "resolved"
        assert first.json()["resolution"]["adjustment_value_cents"] == -250
        assert second.status_code == 409

    def test_resolve_unknown(self, client):
        response = client.post(
            "/api/divergences/nope/resolve",
            json={"kind": "exclusao", "motive": "x"},
        )

        assert response.status_code == 404

    def test_reopen(self, client, divergent):
        client.post(
            f"/api/divergences/{divergent['id']}/resolve",
            json={"kind": "justificativa", "motive": "explained"},
        )

        response = client.post(
            f"/api/divergences/{divergent['id']}/reopen",
            json={"motive": "explanation was wrong"},
        )

        assert response.status_code == 201
        assert response.json()["supersedes_id"] == divergent["id"]
        assert response.json()["status"] == "pending"


class TestReporting:

    def test_performance(self, client, divergent):
        response = client.get("/api/performance", params={"terminal_id": ["T1", "T2"]})

        assert response.status_code == 200
        body = response.json()
        assert body["runs"] == 1
        assert body["total_records"] == 1
        assert body["reconciliation_rate"] == 0.0
        assert body["pending_divergences"] == 1

    def test_performance_empty_scope(self, client):
        body = client.get("/api/performance", params={"start_date": "2020-01-01", "end_date": "2020-01-31"}).json()

        assert body["runs"] == 0
        assert body["reconciliation_rate"] == 0.0

    def test_suggested_tolerance(self, client):
        client.post("/api/terminals", json={"id": "T1", "processor": "rede"})

        body = client.get("/api/terminals/T1/suggested-tolerance").json()

        assert body["processor"] == "rede"
        assert Decimal(str(body["value_tolerance"])) == Decimal("0.75")
        assert body["day_tolerance"] == 1
        assert body["source"] == "processor_default"


class TestAuditTrail:

    def test_summary(self, client, divergent):
        body = client.get("/api/audit/summary").json()

        assert body["error_count"] == 0
        assert body["action_counts"]["run_completed"] == 1
        assert body["action_counts"]["divergence_created"] == 1

    def test_exported_on_shutdown(self, reports_dir):
        with TestClient(create_app()) as client:
            run(client)

        exports = list(reports_dir.glob("audit_*.json"))
        assert len(exports) == 1
        data = json.loads(exports[0].read_text(encoding="utf-8"))
        actions = [e["action"] for e in data["entries"]]
        assert actions[0] == "run_started"
        assert actions[-1] == "run_completed"
