"""
HTTP layer tests.

The app runs without its lifespan; the database, notification queue and
archive are swapped in through dependency overrides.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from windbill import __version__
from windbill.api.dependencies import get_db_session_factory, get_export_archive, get_notification_queue
from windbill.infrastructure.storage import ExportArchive
from windbill.main import create_app
from windbill.services.notifications import NotificationQueue

from conftest import (
    OTHER_TENANT_ID,
    TENANT_ID,
    add_fund,
    add_incoming_invoice,
    add_invoice,
    prepare_database,
)

HEADERS = {"X-Tenant-ID": TENANT_ID}


@pytest.fixture
def factory(database_url):
    engine = create_async_engine(database_url, poolclass=NullPool)
    yield asyncio.run(prepare_database(engine))
    asyncio.run(engine.dispose())


@pytest.fixture
def queue() -> NotificationQueue:
    return NotificationQueue()


@pytest.fixture
def client(factory, queue, tmp_path):
    app = create_app()
    app.dependency_overrides[get_db_session_factory] = lambda: factory
    app.dependency_overrides[get_notification_queue] = lambda: queue
    app.dependency_overrides[get_export_archive] = lambda: ExportArchive(tmp_path / "api-archive")
    return TestClient(app)


def distribution_rule(fund_id: str, **fields) -> dict:
    body = {
        "name": "Ausschuettung 2025",
        "ruleType": "DISTRIBUTION",
        "frequency": "ANNUAL",
        "dayOfMonth": 15,
        "parameters": {"fundId": fund_id, "totalAmount": "1000.00"},
    }
    body.update(fields)
    return body


class TestHealth:
    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": __version__, "database": "connected"}


class TestTenantHeader:
    def test_missing_header(self, client) -> None:
        response = client.get("/api/v1/billing-rules")

        assert response.status_code == 400
        assert response.json()["detail"] == "Missing X-Tenant-ID header"

    def test_blank_header(self, client) -> None:
        response = client.get("/api/v1/billing-rules", headers={"X-Tenant-ID": "  "})

        assert response.status_code == 400


class TestBillingRules:
    def test_create_list_update_deactivate(self, client, factory) -> None:
        fund = asyncio.run(add_fund(factory, ["60", "40"]))

        created = client.post("/api/v1/billing-rules", json=distribution_rule(fund.id), headers=HEADERS)
        assert created.status_code == 201
        rule = created.json()
        assert rule["ruleType"] == "DISTRIBUTION"
        assert rule["parameters"]["totalAmount"] == "1000.00"
        assert rule["nextRunAt"] is not None

        listed = client.get("/api/v1/billing-rules", params={"ruleType": "DISTRIBUTION"}, headers=HEADERS)
        assert [r["id"] for r in listed.json()] == [rule["id"]]
        assert client.get("/api/v1/billing-rules", headers={"X-Tenant-ID": OTHER_TENANT_ID}).json() == []

        patched = client.patch(
            f"/api/v1/billing-rules/{rule['id']}",
            json={"name": "Ausschuettung neu", "frequency": "QUARTERLY"},
            headers=HEADERS,
        )
        assert patched.status_code == 200
        assert patched.json()["name"] == "Ausschuettung neu"
        assert patched.json()["frequency"] == "QUARTERLY"

        deleted = client.delete(f"/api/v1/billing-rules/{rule['id']}", headers=HEADERS)
        assert deleted.json()["isActive"] is False
        assert deleted.json()["nextRunAt"] is None

        inactive = client.get("/api/v1/billing-rules", params={"isActive": "false"}, headers=HEADERS)
        assert len(inactive.json()) == 1

    def test_invalid_parameters_are_rejected(self, client) -> None:
        response = client.post(
            "/api/v1/billing-rules",
            json=distribution_rule("fund-1", parameters={"fundId": "fund-1"}),
            headers=HEADERS,
        )

        assert response.status_code == 422
        assert "totalAmount" in response.json()["detail"]

    def test_unknown_body_field(self, client, factory) -> None:
        fund = asyncio.run(add_fund(factory, ["100"]))
        rule = client.post("/api/v1/billing-rules", json=distribution_rule(fund.id), headers=HEADERS).json()

        response = client.patch(f"/api/v1/billing-rules/{rule['id']}", json={"owner": "x"}, headers=HEADERS)

        assert response.status_code == 422

    def test_rule_of_other_tenant_is_not_found(self, client, factory) -> None:
        fund = asyncio.run(add_fund(factory, ["100"]))
        rule = client.post("/api/v1/billing-rules", json=distribution_rule(fund.id), headers=HEADERS).json()

        response = client.get(f"/api/v1/billing-rules/{rule['id']}", headers={"X-Tenant-ID": OTHER_TENANT_ID})

        assert response.status_code == 404

    def test_dry_run_then_execute(self, client, factory, queue) -> None:
        fund = asyncio.run(add_fund(factory, ["60", "40"]))
        rule = client.post("/api/v1/billing-rules", json=distribution_rule(fund.id), headers=HEADERS).json()
        url = f"/api/v1/billing-rules/{rule['id']}/execute"

        dry = client.post(url, params={"dryRun": "true"}, headers=HEADERS)
        assert dry.status_code == 200
        body = dry.json()
        assert body["dryRun"] is True
        assert body["invoicesCreated"] == 0
        assert body["totalAmount"] == "1000.00"
        assert [i["amount"] for i in body["invoices"]] == ["600.00", "400.00"]
        assert all(i["invoiceId"] is None for i in body["invoices"])

        executed = client.post(url, headers=HEADERS).json()
        assert executed["status"] == "success"
        assert executed["invoicesCreated"] == 2
        assert [i["invoiceNumber"] for i in executed["invoices"]] == [i["invoiceNumber"] for i in body["invoices"]]
        assert queue.pending == 1

        history = client.get(f"/api/v1/billing-rules/{rule['id']}/executions", headers=HEADERS).json()
        assert len(history) == 1
        assert history[0]["forced"] is True
        assert history[0]["invoicesCreated"] == 2

    def test_preview_with_override(self, client, factory) -> None:
        fund = asyncio.run(add_fund(factory, ["100"]))
        rule = client.post("/api/v1/billing-rules", json=distribution_rule(fund.id), headers=HEADERS).json()

        response = client.post(
            f"/api/v1/billing-rules/{rule['id']}/preview",
            json={"totalAmount": "2500.00"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["totalAmount"] == "2500.00"

    def test_execute_unknown_rule(self, client) -> None:
        response = client.post("/api/v1/billing-rules/missing/execute", headers=HEADERS)

        assert response.status_code == 404


class TestInvoiceSequences:
    def test_read_and_update(self, client) -> None:
        year = datetime.now().year

        current = client.get("/api/v1/invoice-sequences/INVOICE", headers=HEADERS)
        assert current.status_code == 200
        assert current.json()["nextInvoiceNumber"] == f"RG-{year}-0001"

        updated = client.put(
            "/api/v1/invoice-sequences/CREDIT_NOTE",
            json={"format": "GS{YY}-{NUMBER}", "digitCount": 6},
            headers=HEADERS,
        )
        assert updated.status_code == 200
        assert updated.json()["documentType"] == "CREDIT_NOTE"
        assert updated.json()["nextInvoiceNumber"] == f"GS{year % 100:02d}-000001"

    def test_invalid_format(self, client) -> None:
        response = client.put("/api/v1/invoice-sequences/INVOICE", json={"format": "RG-{YEAR}"}, headers=HEADERS)

        assert response.status_code == 422

    def test_unknown_document_type(self, client) -> None:
        response = client.get("/api/v1/invoice-sequences/RECEIPT", headers=HEADERS)

        assert response.status_code == 422


class TestBatch:
    def test_mark_sent(self, client, factory) -> None:
        draft = asyncio.run(add_invoice(factory, "RG-2025-0001"))
        paid = asyncio.run(add_invoice(factory, "RG-2025-0002", status="PAID"))

        response = client.post(
            "/api/v1/batch/invoices", json={"action": "mark_sent", "ids": [draft, paid]}, headers=HEADERS
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] == [draft]
        assert body["failed"][0]["id"] == paid
        assert body["totalProcessed"] == 2
        assert body["summary"] == "1 of 2 invoices marked as sent, 1 failed"

    def test_action_not_available_for_entity(self, client) -> None:
        response = client.post(
            "/api/v1/batch/documents", json={"action": "mark_paid", "ids": ["x"]}, headers=HEADERS
        )

        assert response.status_code == 422
        assert "not available" in response.json()["detail"]

    def test_emails_are_queued(self, client, factory, queue) -> None:
        sent = asyncio.run(add_invoice(factory, "RG-2025-0001", status="SENT"))

        response = client.post("/api/v1/batch/emails", json={"action": "send", "ids": [sent]}, headers=HEADERS)

        assert response.json()["success"] == [sent]
        assert queue.pending == 1


class TestSepaExport:
    def test_export_returns_xml(self, client, factory) -> None:
        payable = asyncio.run(add_incoming_invoice(factory))
        received = asyncio.run(add_incoming_invoice(factory, status="RECEIVED"))
        execution_date = (datetime.now(UTC) + timedelta(days=2)).date()

        response = client.post(
            "/api/v1/sepa/export",
            json={"invoiceIds": [payable, received], "executionDate": execution_date.isoformat()},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert response.headers["x-sepa-message-id"].startswith("WPM-")
        assert response.headers["x-sepa-payment-count"] == "1"
        assert response.headers["x-sepa-control-sum"] == "1190.00"
        assert json.loads(response.headers["x-sepa-skipped"]) == [
            {"invoiceId": received, "reason": "Status is RECEIVED, expected APPROVED"}
        ]
        assert b"<CtrlSum>1190.00</CtrlSum>" in response.content

    def test_nothing_eligible(self, client, factory) -> None:
        received = asyncio.run(add_incoming_invoice(factory, status="RECEIVED"))

        response = client.post("/api/v1/sepa/export", json={"invoiceIds": [received]}, headers=HEADERS)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["message"] == "No eligible payments for SEPA export"
        assert detail["skipped"] == [{"invoiceId": received, "reason": "Status is RECEIVED, expected APPROVED"}]

    def test_empty_id_list(self, client) -> None:
        response = client.post("/api/v1/sepa/export", json={"invoiceIds": []}, headers=HEADERS)

        assert response.status_code == 422
