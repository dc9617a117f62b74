"""SEPA credit transfer export."""

import asyncio
import xml.etree.ElementTree as ET
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from windbill.domain.models import SepaDebtor, SepaPayment
from windbill.exceptions import NoEligiblePaymentsError, NotFoundError, ValidationError
from windbill.infrastructure.database import IncomingInvoice, SepaExport, Tenant
from windbill.infrastructure.storage import ExportArchive, verify_hash
from windbill.services.sepa import (
    PAIN_NAMESPACE,
    SepaExportService,
    build_sepa_document,
    generate_message_id,
    skonto_amount,
)

from conftest import OTHER_TENANT_ID, TENANT_BIC, TENANT_IBAN, TENANT_ID, add_incoming_invoice

NOW = datetime(2025, 3, 10, 9, 30, tzinfo=UTC)
NS = {"p": PAIN_NAMESPACE}


@pytest.fixture
def archive(tmp_path) -> ExportArchive:
    return ExportArchive(tmp_path / "sepa-archive")


class GatedExportService(SepaExportService):
    """Holds its first claim until every gated export has built its payments."""

    def __init__(self, session_factory, archive, gate: asyncio.Barrier) -> None:
        super().__init__(session_factory, archive=archive)
        self.gate = gate
        self.waited = False

    async def _claim_and_archive(self, *args, **kwargs):
        if not self.waited:
            self.waited = True
            await self.gate.wait()
        return await super()._claim_and_archive(*args, **kwargs)


class TestHelpers:
    def test_message_id(self) -> None:
        message_id = generate_message_id("WPM", NOW)
        assert message_id == f"WPM-20250310-{int(NOW.timestamp() * 1000)}"
        assert len(message_id) <= 35

    @pytest.mark.parametrize(
        ("execution_date", "expected"),
        [
            (date(2025, 3, 20), Decimal("1166.20")),
            (date(2025, 3, 21), Decimal("1190.00")),
        ],
    )
    def test_skonto_applies_until_deadline(self, execution_date: date, expected: Decimal) -> None:
        assert skonto_amount(Decimal("1190.00"), Decimal("2"), date(2025, 3, 20), execution_date) == expected

    def test_document_without_payments_is_refused(self) -> None:
        with pytest.raises(ValueError):
            build_sepa_document(SepaDebtor("Nordwind", TENANT_IBAN), [], "MSG-1", NOW, date(2025, 3, 12))

    def test_missing_bic_is_not_provided(self) -> None:
        payment = SepaPayment(
            invoice_id="inv-1",
            end_to_end_id="E2E-1",
            amount=Decimal("10.00"),
            currency="EUR",
            creditor_name="Netzbetreiber",
            creditor_iban="GB82WEST12345698765432",
            creditor_bic=None,
            remittance="Invoice 1",
            execution_date=date(2025, 3, 12),
        )
        document = build_sepa_document(SepaDebtor("Nordwind", TENANT_IBAN), [payment], "MSG-1", NOW, date(2025, 3, 12))

        root = ET.fromstring(document)
        assert root.find(".//p:DbtrAgt/p:FinInstnId/p:Othr/p:Id", NS).text == "NOTPROVIDED"
        assert root.find(".//p:CdtTrfTxInf/p:CdtrAgt", NS) is None
        assert document.startswith(b"<?xml version='1.0' encoding='utf-8'?>")


@pytest.mark.asyncio
class TestSepaExport:
    async def test_export_with_skipped_invoices(self, session_factory, archive) -> None:
        payable = await add_incoming_invoice(
            session_factory, skonto_percent=Decimal("2"), skonto_deadline=date(2025, 3, 20)
        )
        no_iban = await add_incoming_invoice(session_factory, creditor_iban=None)
        received = await add_incoming_invoice(session_factory, status="RECEIVED")
        service = SepaExportService(session_factory, archive=archive)

        result = await service.export(
            TENANT_ID, [payable, no_iban, received, "missing"], date(2025, 3, 12), now=NOW
        )

        assert result.message_id.startswith("WPM-20250310-")
        assert [p.invoice_id for p in result.payments] == [payable]
        assert result.payments[0].amount == Decimal("1166.20")
        assert result.control_sum == Decimal("1166.20")
        assert {s.invoice_id: s.reason for s in result.skipped} == {
            no_iban: "Missing creditor IBAN",
            received: "Status is RECEIVED, expected APPROVED",
            "missing": "Invoice not found",
        }

        root = ET.fromstring(result.document)
        assert root.find("p:CstmrCdtTrfInitn/p:GrpHdr/p:MsgId", NS).text == result.message_id
        assert root.find("p:CstmrCdtTrfInitn/p:GrpHdr/p:NbOfTxs", NS).text == "1"
        assert root.find("p:CstmrCdtTrfInitn/p:GrpHdr/p:CtrlSum", NS).text == "1166.20"
        assert root.find(".//p:ReqdExctnDt", NS).text == "2025-03-12"
        assert root.find(".//p:DbtrAcct/p:Id/p:IBAN", NS).text == TENANT_IBAN
        transfer = root.find(".//p:CdtTrfTxInf", NS)
        assert transfer.find("p:PmtId/p:EndToEndId", NS).text == "RS-2025-114"
        assert transfer.find("p:Amt/p:InstdAmt", NS).attrib["Ccy"] == "EUR"
        assert transfer.find("p:Cdtr/p:Nm", NS).text == "Rotorservice Mueller GmbH"
        assert transfer.find("p:CdtrAcct/p:Id/p:IBAN", NS).text == "GB82WEST12345698765432"

        stored = await archive.retrieve(result.archive_path)
        assert stored == result.document

        async with session_factory() as session:
            rows = {i.id: i for i in await session.scalars(select(IncomingInvoice))}
        assert rows[payable].status == "EXPORTED"
        assert rows[payable].sepa_message_id == result.message_id
        assert rows[payable].exported_at is not None
        assert rows[received].status == "RECEIVED"

    async def test_archive_path_is_content_addressed(self, session_factory, archive) -> None:
        invoice_id = await add_incoming_invoice(session_factory)
        service = SepaExportService(session_factory, archive=archive)

        result = await service.export(TENANT_ID, [invoice_id], date(2025, 3, 12), now=NOW)

        hash_value = result.archive_path.rsplit("/", 1)[-1].removesuffix(".xml")
        assert result.archive_path.startswith(f"{TENANT_ID}/{hash_value[:2]}/")
        assert verify_hash(result.document, f"sha256:{hash_value}")

    async def test_nothing_eligible(self, session_factory, archive) -> None:
        invalid_iban = await add_incoming_invoice(session_factory, creditor_iban="DE00123456781234567890")
        zero = await add_incoming_invoice(session_factory, gross_amount=Decimal("0.00"))
        service = SepaExportService(session_factory, archive=archive)

        with pytest.raises(NoEligiblePaymentsError) as excinfo:
            await service.export(TENANT_ID, [invalid_iban, zero], date(2025, 3, 12), now=NOW)

        reasons = {s.invoice_id: s.reason for s in excinfo.value.skipped}
        assert reasons[invalid_iban].startswith("Invalid creditor IBAN")
        assert reasons[zero] == "Amount is missing or not positive"

        async with session_factory() as session:
            exported = (
                await session.scalars(select(IncomingInvoice).where(IncomingInvoice.status == "EXPORTED"))
            ).all()
        assert exported == []

    async def test_past_execution_date(self, session_factory, archive) -> None:
        invoice_id = await add_incoming_invoice(session_factory)
        service = SepaExportService(session_factory, archive=archive)

        with pytest.raises(ValidationError, match="past"):
            await service.export(TENANT_ID, [invoice_id], date(2025, 3, 9), now=NOW)

    async def test_tenant_without_iban(self, session_factory, archive) -> None:
        invoice_id = await add_incoming_invoice(session_factory, tenant_id=OTHER_TENANT_ID)
        service = SepaExportService(session_factory, archive=archive)

        with pytest.raises(ValidationError, match="IBAN"):
            await service.export(OTHER_TENANT_ID, [invoice_id], date(2025, 3, 12), now=NOW)

    async def test_unknown_tenant(self, session_factory, archive) -> None:
        service = SepaExportService(session_factory, archive=archive)

        with pytest.raises(NotFoundError):
            await service.export("tenant-unknown", ["x"], date(2025, 3, 12), now=NOW)

    async def test_other_tenants_invoices_are_not_found(self, session_factory, archive) -> None:
        own = await add_incoming_invoice(session_factory)
        foreign = await add_incoming_invoice(session_factory, tenant_id=OTHER_TENANT_ID)
        service = SepaExportService(session_factory, archive=archive)

        result = await service.export(TENANT_ID, [own, foreign], date(2025, 3, 12), now=NOW)

        assert [s.reason for s in result.skipped] == ["Invoice not found"]

    async def test_debtor_bic_is_normalized(self, session_factory, archive) -> None:
        async with session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, TENANT_ID)
                tenant.bic = " cobadeff xxx"
        invoice_id = await add_incoming_invoice(session_factory)
        service = SepaExportService(session_factory, archive=archive)

        result = await service.export(TENANT_ID, [invoice_id], date(2025, 3, 12), now=NOW)

        root = ET.fromstring(result.document)
        assert root.find(".//p:DbtrAgt/p:FinInstnId/p:BIC", NS).text == TENANT_BIC

    async def test_exports_in_the_same_millisecond_get_distinct_message_ids(self, session_factory, archive) -> None:
        first_invoice = await add_incoming_invoice(session_factory)
        second_invoice = await add_incoming_invoice(session_factory, invoice_number="RS-2025-115")
        service = SepaExportService(session_factory, archive=archive)

        first = await service.export(TENANT_ID, [first_invoice], date(2025, 3, 12), now=NOW)
        second = await service.export(TENANT_ID, [second_invoice], date(2025, 3, 12), now=NOW)

        stamp = int(NOW.timestamp() * 1000)
        assert first.message_id == f"WPM-20250310-{stamp}"
        assert second.message_id == f"WPM-20250310-{stamp + 1}"
        async with session_factory() as session:
            exports = (await session.scalars(select(SepaExport).order_by(SepaExport.message_id))).all()
        assert [e.message_id for e in exports] == [first.message_id, second.message_id]
        assert [e.payment_count for e in exports] == [1, 1]


@pytest.mark.asyncio
class TestConcurrentExports:
    async def test_invoice_is_exported_once(self, session_factory, archive) -> None:
        invoice_id = await add_incoming_invoice(session_factory)
        gate = asyncio.Barrier(2)
        services = [GatedExportService(session_factory, archive, gate) for _ in range(2)]

        outcomes = await asyncio.gather(
            *(service.export(TENANT_ID, [invoice_id], date(2025, 3, 12), now=NOW) for service in services),
            return_exceptions=True,
        )

        exported = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
        refused = [outcome for outcome in outcomes if isinstance(outcome, NoEligiblePaymentsError)]
        assert len(exported) == 1 and len(refused) == 1
        assert [p.invoice_id for p in exported[0].payments] == [invoice_id]
        assert [(s.invoice_id, s.reason) for s in refused[0].skipped] == [
            (invoice_id, "Already exported by another run")
        ]

        async with session_factory() as session:
            invoice = await session.get(IncomingInvoice, invoice_id)
            exports = (await session.scalars(select(SepaExport))).all()
        assert invoice.status == "EXPORTED"
        assert invoice.sepa_message_id == exported[0].message_id
        assert [e.message_id for e in exports] == [exported[0].message_id]


class TestArchive:
    @pytest.mark.asyncio
    async def test_traversal_is_rejected(self, archive) -> None:
        with pytest.raises(ValueError, match="traversal"):
            await archive.retrieve("../outside.xml")

    @pytest.mark.asyncio
    async def test_tampered_file_fails_integrity_check(self, archive) -> None:
        stored = await archive.store(b"<Document/>", TENANT_ID)
        (archive.base_path / stored.path).write_bytes(b"<Document>changed</Document>")

        with pytest.raises(ValueError, match="integrity"):
            await archive.retrieve(stored.path, expected_hash=stored.document_hash)
