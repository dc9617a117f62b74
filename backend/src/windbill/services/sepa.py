"""
SEPA credit transfer export for approved incoming invoices.

Produces one ISO 20022 pain.001.001.03 document per export: a group
header, one payment information block debiting the tenant's account,
and one credit transfer per payable invoice. Invoices that cannot be
paid (no valid IBAN, no positive amount, wrong status) are left out and
reported, never fatal, unless nothing is left at all.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.config import get_settings
from windbill.domain.models import (
    IncomingInvoiceStatus,
    SepaDebtor,
    SepaExportResult,
    SepaPayment,
    SkippedInvoice,
)
from windbill.domain.tax import percentage_of
from windbill.domain.validation import (
    MAX_NAME_LENGTH,
    MAX_REMITTANCE_LENGTH,
    is_valid_bic,
    is_valid_iban,
    make_end_to_end_id,
    normalize_bic,
    normalize_iban,
    sanitize_text,
)
from windbill.exceptions import (
    NoEligiblePaymentsError,
    NotFoundError,
    SequenceConflictError,
    ValidationError,
)
from windbill.infrastructure.database import IncomingInvoice, SepaExport, Tenant, utcnow
from windbill.infrastructure.storage import ExportArchive

logger = logging.getLogger(__name__)

PAIN_NAMESPACE = "urn:iso:std:iso:20022:tech:xsd:pain.001.001.03"


def generate_message_id(prefix: str, now: datetime) -> str:
    """Message identifier of the form <PREFIX>-<YYYYMMDD>-<epoch-ms>."""
    return f"{prefix}-{now:%Y%m%d}-{int(now.timestamp() * 1000)}"


def skonto_amount(
    gross_amount: Decimal,
    skonto_percent: Decimal | None,
    skonto_deadline: date | None,
    execution_date: date,
) -> Decimal:
    """Amount to transfer, reduced by the early payment discount while it applies."""
    if not skonto_percent or skonto_deadline is None or execution_date > skonto_deadline:
        return gross_amount
    return gross_amount - percentage_of(gross_amount, skonto_percent)


def _format_amount(amount: Decimal) -> str:
    return f"{amount:.2f}"


def _add_agent(parent: ET.Element, tag: str, bic: str | None) -> None:
    agent = ET.SubElement(parent, tag)
    institution = ET.SubElement(agent, "FinInstnId")
    if bic:
        ET.SubElement(institution, "BIC").text = bic
    else:
        other = ET.SubElement(institution, "Othr")
        ET.SubElement(other, "Id").text = "NOTPROVIDED"


def build_sepa_document(
    debtor: SepaDebtor,
    payments: Sequence[SepaPayment],
    message_id: str,
    created_at: datetime,
    execution_date: date,
) -> bytes:
    """
    Render a pain.001.001.03 credit transfer initiation.

    Args:
        debtor: Paying account
        payments: Credit transfers, at least one
        message_id: Unique message identifier (max 35 characters)
        created_at: Creation timestamp written to the group header
        execution_date: Requested execution date

    Returns:
        UTF-8 encoded XML with declaration
    """
    if not payments:
        raise ValueError("A SEPA document needs at least one payment")

    count = str(len(payments))
    control_sum = _format_amount(sum((p.amount for p in payments), Decimal("0.00")))
    debtor_name = sanitize_text(debtor.name, MAX_NAME_LENGTH)

    root = ET.Element("Document", {"xmlns": PAIN_NAMESPACE})
    initiation = ET.SubElement(root, "CstmrCdtTrfInitn")

    # Group header
    header = ET.SubElement(initiation, "GrpHdr")
    ET.SubElement(header, "MsgId").text = message_id
    ET.SubElement(header, "CreDtTm").text = created_at.replace(microsecond=0, tzinfo=None).isoformat()
    ET.SubElement(header, "NbOfTxs").text = count
    ET.SubElement(header, "CtrlSum").text = control_sum
    initiating_party = ET.SubElement(header, "InitgPty")
    ET.SubElement(initiating_party, "Nm").text = debtor_name

    # Payment information
    info = ET.SubElement(initiation, "PmtInf")
    ET.SubElement(info, "PmtInfId").text = f"{message_id}-1"
    ET.SubElement(info, "PmtMtd").text = "TRF"
    ET.SubElement(info, "BtchBookg").text = "true"
    ET.SubElement(info, "NbOfTxs").text = count
    ET.SubElement(info, "CtrlSum").text = control_sum
    payment_type = ET.SubElement(info, "PmtTpInf")
    service_level = ET.SubElement(payment_type, "SvcLvl")
    ET.SubElement(service_level, "Cd").text = "SEPA"
    ET.SubElement(info, "ReqdExctnDt").text = execution_date.isoformat()

    debtor_elem = ET.SubElement(info, "Dbtr")
    ET.SubElement(debtor_elem, "Nm").text = debtor_name
    debtor_account = ET.SubElement(ET.SubElement(info, "DbtrAcct"), "Id")
    ET.SubElement(debtor_account, "IBAN").text = debtor.iban
    _add_agent(info, "DbtrAgt", debtor.bic)
    ET.SubElement(info, "ChrgBr").text = "SLEV"

    # One credit transfer per payment
    for payment in payments:
        transfer = ET.SubElement(info, "CdtTrfTxInf")
        payment_id = ET.SubElement(transfer, "PmtId")
        ET.SubElement(payment_id, "EndToEndId").text = payment.end_to_end_id
        amount = ET.SubElement(transfer, "Amt")
        ET.SubElement(amount, "InstdAmt", {"Ccy": payment.currency}).text = _format_amount(payment.amount)
        if payment.creditor_bic:
            _add_agent(transfer, "CdtrAgt", payment.creditor_bic)
        creditor = ET.SubElement(transfer, "Cdtr")
        ET.SubElement(creditor, "Nm").text = payment.creditor_name
        creditor_account = ET.SubElement(ET.SubElement(transfer, "CdtrAcct"), "Id")
        ET.SubElement(creditor_account, "IBAN").text = payment.creditor_iban
        remittance = ET.SubElement(transfer, "RmtInf")
        ET.SubElement(remittance, "Ustrd").text = payment.remittance

    ET.indent(root, space="  ")
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def to_payment(
    invoice: IncomingInvoice,
    execution_date: date,
    currency: str,
) -> SepaPayment | SkippedInvoice:
    """Turn one incoming invoice into a payment, or say why it cannot be paid."""
    if invoice.status != IncomingInvoiceStatus.APPROVED.value:
        return SkippedInvoice(invoice.id, f"Status is {invoice.status}, expected APPROVED")
    if (invoice.currency or currency) != currency:
        return SkippedInvoice(invoice.id, f"Currency {invoice.currency} is not {currency}")

    iban = normalize_iban(invoice.creditor_iban)
    if not iban:
        return SkippedInvoice(invoice.id, "Missing creditor IBAN")
    if not is_valid_iban(iban):
        return SkippedInvoice(invoice.id, f"Invalid creditor IBAN {iban}")

    if invoice.gross_amount is None or invoice.gross_amount <= 0:
        return SkippedInvoice(invoice.id, "Amount is missing or not positive")
    amount = skonto_amount(
        invoice.gross_amount, invoice.skonto_percent, invoice.skonto_deadline, execution_date
    )

    bic = normalize_bic(invoice.creditor_bic)
    remittance = invoice.payment_reference or (
        f"Invoice {invoice.invoice_number}" if invoice.invoice_number else ""
    )
    return SepaPayment(
        invoice_id=invoice.id,
        end_to_end_id=make_end_to_end_id(invoice.invoice_number, invoice.id),
        amount=amount,
        currency=currency,
        creditor_name=sanitize_text(invoice.vendor_name, MAX_NAME_LENGTH) or "NOTPROVIDED",
        creditor_iban=iban,
        creditor_bic=bic if is_valid_bic(bic) else None,
        remittance=sanitize_text(remittance, MAX_REMITTANCE_LENGTH),
        execution_date=execution_date,
    )


class SepaExportService:
    """
    Exports approved incoming invoices of a tenant as one SEPA batch.

    Example:
        service = SepaExportService(get_session_factory())
        result = await service.export(tenant_id, invoice_ids)
        bank_upload(result.document)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        archive: ExportArchive | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._archive = archive

    @property
    def archive(self) -> ExportArchive:
        if self._archive is None:
            self._archive = ExportArchive()
        return self._archive

    async def export(
        self,
        tenant_id: str,
        invoice_ids: Sequence[str],
        execution_date: date | None = None,
        now: datetime | None = None,
    ) -> SepaExportResult:
        """
        Build, archive and record a payment batch.

        Invoices move from APPROVED to EXPORTED in the same transaction
        that archives the document. An invoice a concurrent export claimed
        first is reported as skipped. A message id already in use is
        retried one millisecond later.

        Raises:
            ValidationError: If no ids are given, the execution date lies
                in the past or the tenant has no valid IBAN
            NotFoundError: If the tenant does not exist
            NoEligiblePaymentsError: If every invoice was skipped
            SequenceConflictError: If no unused message id was found
        """
        settings = get_settings()
        now = now or utcnow()
        execution_date = execution_date or now.date()

        ids = list(dict.fromkeys(invoice_ids))
        if not ids:
            raise ValidationError("No invoices selected for export")
        if len(ids) > settings.batch_max_invoices:
            raise ValidationError(f"At most {settings.batch_max_invoices} invoices per export")
        if execution_date < now.date():
            raise ValidationError("Execution date must not be in the past")

        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError(f"Tenant {tenant_id} not found")
            if not is_valid_iban(tenant.iban):
                raise ValidationError("Tenant has no valid IBAN for SEPA exports")

            rows = await session.scalars(
                select(IncomingInvoice).where(
                    IncomingInvoice.tenant_id == tenant_id,
                    IncomingInvoice.id.in_(ids),
                )
            )
            invoices = {invoice.id: invoice for invoice in rows.all()}

        payments: list[SepaPayment] = []
        skipped: list[SkippedInvoice] = []
        for invoice_id in ids:
            invoice = invoices.get(invoice_id)
            if invoice is None:
                skipped.append(SkippedInvoice(invoice_id, "Invoice not found"))
                continue
            outcome = to_payment(invoice, execution_date, settings.default_currency)
            if isinstance(outcome, SkippedInvoice):
                skipped.append(outcome)
            else:
                payments.append(outcome)

        if not payments:
            logger.warning(f"SEPA export for tenant {tenant_id}: all {len(ids)} invoices skipped")
            raise NoEligiblePaymentsError("No eligible payments for SEPA export", skipped=skipped)

        debtor = SepaDebtor(
            name=tenant.name,
            iban=normalize_iban(tenant.iban),
            bic=normalize_bic(tenant.bic) if is_valid_bic(tenant.bic) else None,
        )

        for attempt in range(settings.sequence_max_attempts):
            message_id = generate_message_id(
                settings.sepa_message_prefix, now + timedelta(milliseconds=attempt)
            )
            try:
                result = await self._claim_and_archive(
                    tenant_id, debtor, payments, skipped, message_id, now, execution_date
                )
            except IntegrityError:
                logger.warning(f"SEPA message id {message_id} is already taken, retrying")
                continue

            logger.info(
                f"SEPA export {message_id} for tenant {tenant_id}: {len(result.payments)} payments, "
                f"sum {result.control_sum}, {len(result.skipped)} skipped"
            )
            return result

        raise SequenceConflictError(
            f"Could not reserve a SEPA message id after {settings.sequence_max_attempts} attempts"
        )

    async def _claim_and_archive(
        self,
        tenant_id: str,
        debtor: SepaDebtor,
        payments: list[SepaPayment],
        skipped: list[SkippedInvoice],
        message_id: str,
        now: datetime,
        execution_date: date,
    ) -> SepaExportResult:
        """
        Reserve the message id, claim the invoices and archive the file in one transaction.

        An invoice is claimed only while it is still APPROVED, so a
        concurrent export that got there first leaves it out of this
        file. Nothing is committed if archiving fails.

        Raises:
            IntegrityError: If the message id is already in use
            NoEligiblePaymentsError: If every invoice was claimed elsewhere
        """
        skipped = list(skipped)
        claimed: list[SepaPayment] = []

        async with self._session_factory() as session:
            async with session.begin():
                export = SepaExport(
                    tenant_id=tenant_id,
                    message_id=message_id,
                    execution_date=execution_date,
                    created_at=now,
                )
                session.add(export)
                await session.flush()

                for payment in payments:
                    outcome = await session.execute(
                        update(IncomingInvoice)
                        .where(
                            IncomingInvoice.tenant_id == tenant_id,
                            IncomingInvoice.id == payment.invoice_id,
                            IncomingInvoice.status == IncomingInvoiceStatus.APPROVED.value,
                        )
                        .values(
                            status=IncomingInvoiceStatus.EXPORTED.value,
                            exported_at=now,
                            sepa_message_id=message_id,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if outcome.rowcount == 1:
                        claimed.append(payment)
                    else:
                        skipped.append(SkippedInvoice(payment.invoice_id, "Already exported by another run"))

                if not claimed:
                    logger.warning(f"SEPA export for tenant {tenant_id}: every invoice was claimed elsewhere")
                    raise NoEligiblePaymentsError("No eligible payments for SEPA export", skipped=skipped)

                document = build_sepa_document(debtor, claimed, message_id, now, execution_date)
                archived = await self.archive.store(document, tenant_id)

                export.payment_count = len(claimed)
                export.control_sum = sum((p.amount for p in claimed), Decimal("0.00"))
                export.archive_path = archived.path
                export.document_hash = archived.document_hash

        return SepaExportResult(
            message_id=message_id,
            created_at=now,
            document=document,
            payments=claimed,
            skipped=skipped,
            archive_path=archived.path,
        )
