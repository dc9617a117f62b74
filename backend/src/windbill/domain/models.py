"""
Domain models for billing rule execution, batch actions and SEPA exports.

These are value objects produced and consumed by the services layer.
Persistence lives in infrastructure.database; nothing here touches I/O.

Design Decisions:
- Using dataclasses for typed domain objects
- Frozen dataclasses for inputs, mutable ones for results built incrementally
- Decimal for all monetary values to avoid floating-point errors
- Enum values match the strings stored in the database
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class DocumentType(Enum):
    """Kinds of outgoing documents that draw from a number sequence."""
    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"


class RuleType(Enum):
    """Billing rule flavours."""
    LEASE_PAYMENT = "LEASE_PAYMENT"
    LEASE_ADVANCE = "LEASE_ADVANCE"
    DISTRIBUTION = "DISTRIBUTION"
    MANAGEMENT_FEE = "MANAGEMENT_FEE"
    CUSTOM = "CUSTOM"


class Frequency(Enum):
    """How often a scheduled billing rule runs."""
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMI_ANNUAL = "SEMI_ANNUAL"
    ANNUAL = "ANNUAL"
    CUSTOM_CRON = "CUSTOM_CRON"


class TaxType(Enum):
    """German VAT categories."""
    STANDARD = "STANDARD"
    REDUCED = "REDUCED"
    EXEMPT = "EXEMPT"


class InvoiceStatus(Enum):
    """Lifecycle of an outgoing invoice."""
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class IncomingInvoiceStatus(Enum):
    """Lifecycle of a vendor invoice awaiting payment."""
    RECEIVED = "RECEIVED"
    APPROVED = "APPROVED"
    EXPORTED = "EXPORTED"
    PAID = "PAID"


class EntityStatus(Enum):
    """Status of shareholders and leases."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ExecutionStatus(Enum):
    """Aggregate outcome of a rule execution."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class LineDraft:
    """
    A single line of an invoice that has not been persisted yet.

    Quantities and prices are Decimal; the net amount is derived.
    """
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_type: TaxType = TaxType.STANDARD
    unit: str = "pauschal"
    reference_type: str | None = None
    reference_id: str | None = None

    @property
    def net_amount(self) -> Decimal:
        """Quantity times unit price, unrounded."""
        return self.quantity * self.unit_price


@dataclass
class BillingTarget:
    """
    One billable entity resolved by a rule handler.

    Each target becomes at most one invoice or credit note. A target
    with ``skip_reason`` set is reported as skipped instead.
    """
    recipient_name: str
    document_type: DocumentType
    lines: list[LineDraft] = field(default_factory=list)
    recipient_type: str | None = None
    recipient_address: str | None = None
    invoice_date: date | None = None
    due_days: int | None = None
    payment_reference: str | None = None
    internal_reference: str | None = None
    service_start_date: date | None = None
    service_end_date: date | None = None
    notes: str | None = None
    fund_id: str | None = None
    park_id: str | None = None
    shareholder_id: str | None = None
    lease_id: str | None = None
    skip_reason: str | None = None


@dataclass
class InvoiceCreationResult:
    """Outcome slot for a single target of a rule execution."""
    success: bool
    recipient_name: str | None = None
    invoice_id: str | None = None
    invoice_number: str | None = None
    amount: Decimal | None = None
    error: str | None = None
    skipped: bool = False


@dataclass
class ExecutionSummary:
    """Counts of a rule execution."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class RuleExecutionResult:
    """
    Complete result of running a billing rule.

    Mutable because slots are appended as targets are processed.
    """
    status: ExecutionStatus
    dry_run: bool = False
    invoices_created: int = 0
    total_amount: Decimal = Decimal("0.00")
    invoices: list[InvoiceCreationResult] = field(default_factory=list)
    summary: ExecutionSummary = field(default_factory=ExecutionSummary)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    execution_id: str | None = None
    error_message: str | None = None

    def record(self, slot: InvoiceCreationResult) -> None:
        """Append a slot and keep the summary counts in step."""
        self.invoices.append(slot)
        if slot.skipped:
            self.summary.skipped += 1
            return
        self.summary.processed += 1
        if slot.success:
            self.summary.successful += 1
            self.total_amount += slot.amount or Decimal("0")
            if not self.dry_run:
                self.invoices_created += 1
        else:
            self.summary.failed += 1

    def finalize(self) -> None:
        """Derive the aggregate status from the recorded slots."""
        all_failed = self.summary.processed > 0 and self.summary.successful == 0
        self.status = ExecutionStatus.FAILED if all_failed else ExecutionStatus.SUCCESS
        if self.summary.failed:
            self.error_message = (
                f"{self.summary.failed} of {self.summary.processed} documents could not be created"
            )

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation stored on the execution audit row."""
        return {
            "invoices": [
                {
                    "success": slot.success,
                    "skipped": slot.skipped,
                    "invoiceId": slot.invoice_id,
                    "invoiceNumber": slot.invoice_number,
                    "recipientName": slot.recipient_name,
                    "amount": str(slot.amount) if slot.amount is not None else None,
                    "error": slot.error,
                }
                for slot in self.invoices
            ],
            "summary": {
                "processed": self.summary.processed,
                "successful": self.summary.successful,
                "failed": self.summary.failed,
                "skipped": self.summary.skipped,
            },
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class BatchFailure:
    """An item a batch operation could not process."""
    id: str
    error: str


@dataclass
class BatchResult:
    """Aggregated outcome of a batch operation."""
    success: list[str] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)
    total_processed: int = 0


@dataclass(frozen=True)
class SepaDebtor:
    """The paying account (the tenant)."""
    name: str
    iban: str
    bic: str | None = None


@dataclass(frozen=True)
class SepaPayment:
    """
    One credit transfer instruction.

    Built only from invoices with a positive amount and a valid
    creditor IBAN.
    """
    invoice_id: str
    end_to_end_id: str
    amount: Decimal
    currency: str
    creditor_name: str
    creditor_iban: str
    creditor_bic: str | None
    remittance: str
    execution_date: date


@dataclass(frozen=True)
class SkippedInvoice:
    """An invoice left out of a SEPA export and why."""
    invoice_id: str
    reason: str


@dataclass
class SepaExportResult:
    """Generated payment batch plus what was left out."""
    message_id: str
    created_at: datetime
    document: bytes
    payments: list[SepaPayment] = field(default_factory=list)
    skipped: list[SkippedInvoice] = field(default_factory=list)
    archive_path: str | None = None

    @property
    def control_sum(self) -> Decimal:
        """Sum of all included payment amounts."""
        return sum((p.amount for p in self.payments), Decimal("0.00"))
