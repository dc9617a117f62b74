"""
Pydantic schemas for API request/response validation.

These schemas define the contract between frontend and backend.
Fields are camelCase on the wire; unknown request fields are rejected.
All monetary values use strings to avoid floating point issues.
"""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from windbill.domain.models import (
    DocumentType,
    Frequency,
    InvoiceCreationResult,
    RuleExecutionResult,
    RuleType,
)
from windbill.infrastructure.database import BillingRule, BillingRuleExecution
from windbill.services.batch import BatchAction, BatchActionOutcome
from windbill.services.sequences import SequenceState


class ApiModel(BaseModel):
    """Base for all API schemas."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# Request Schemas
# =============================================================================

class BillingRuleCreate(ApiModel):
    """Request to create a billing rule."""
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    rule_type: RuleType
    frequency: Frequency
    cron_pattern: str | None = Field(default=None, max_length=100)
    day_of_month: int | None = Field(default=None, ge=1, le=28)
    parameters: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class BillingRuleUpdate(ApiModel):
    """Partial update of a billing rule. Omitted fields stay unchanged."""
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    frequency: Frequency | None = None
    cron_pattern: str | None = Field(default=None, max_length=100)
    day_of_month: int | None = Field(default=None, ge=1, le=28)
    parameters: dict[str, Any] | None = None
    is_active: bool | None = None


class SequenceSettingsUpdate(ApiModel):
    """New template and/or pad width for a number sequence."""
    format: str | None = Field(default=None, min_length=1, max_length=50)
    digit_count: int | None = Field(default=None, ge=1, le=12)


class BatchRequest(ApiModel):
    """Apply one action to a list of entity ids."""
    action: BatchAction
    ids: list[str] = Field(..., min_length=1)


class SepaExportRequest(ApiModel):
    """Export approved incoming invoices as a SEPA credit transfer file."""
    invoice_ids: list[str] = Field(..., min_length=1)
    execution_date: date | None = None


# =============================================================================
# Response Schemas
# =============================================================================

class BillingRuleResponse(ApiModel):
    """A stored billing rule."""
    id: str
    name: str
    description: str | None = None
    rule_type: str
    frequency: str
    cron_pattern: str | None = None
    day_of_month: int | None = None
    parameters: dict[str, Any]
    is_active: bool
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_rule(cls, rule: BillingRule) -> "BillingRuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            rule_type=rule.rule_type,
            frequency=rule.frequency,
            cron_pattern=rule.cron_pattern,
            day_of_month=rule.day_of_month,
            parameters=rule.parameters or {},
            is_active=rule.is_active,
            last_run_at=rule.last_run_at,
            next_run_at=rule.next_run_at,
            created_at=rule.created_at,
        )


class ExecutionRecordResponse(ApiModel):
    """One audit row of a rule execution."""
    id: str
    status: str
    forced: bool
    started_at: datetime
    completed_at: datetime | None = None
    invoices_created: int
    total_amount: str | None = None
    error_message: str | None = None

    @classmethod
    def from_execution(cls, execution: BillingRuleExecution) -> "ExecutionRecordResponse":
        return cls(
            id=execution.id,
            status=execution.status,
            forced=execution.forced,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            invoices_created=execution.invoices_created,
            total_amount=str(execution.total_amount) if execution.total_amount is not None else None,
            error_message=execution.error_message,
        )


class InvoiceOutcomeResponse(ApiModel):
    """Outcome of one target of a rule execution."""
    success: bool
    skipped: bool = False
    invoice_id: str | None = None
    invoice_number: str | None = None
    recipient_name: str | None = None
    amount: str | None = None
    error: str | None = None

    @classmethod
    def from_slot(cls, slot: InvoiceCreationResult) -> "InvoiceOutcomeResponse":
        return cls(
            success=slot.success,
            skipped=slot.skipped,
            invoice_id=slot.invoice_id,
            invoice_number=slot.invoice_number,
            recipient_name=slot.recipient_name,
            amount=str(slot.amount) if slot.amount is not None else None,
            error=slot.error,
        )


class ExecutionSummaryResponse(ApiModel):
    processed: int
    successful: int
    failed: int
    skipped: int


class RuleExecutionResponse(ApiModel):
    """Result of executing or previewing a billing rule."""
    status: str
    dry_run: bool
    invoices_created: int
    total_amount: str
    invoices: list[InvoiceOutcomeResponse]
    summary: ExecutionSummaryResponse
    warnings: list[str] = []
    metadata: dict[str, Any] = {}
    execution_id: str | None = None
    error_message: str | None = None

    @classmethod
    def from_result(cls, result: RuleExecutionResult) -> "RuleExecutionResponse":
        return cls(
            status=result.status.value,
            dry_run=result.dry_run,
            invoices_created=result.invoices_created,
            total_amount=str(result.total_amount),
            invoices=[InvoiceOutcomeResponse.from_slot(slot) for slot in result.invoices],
            summary=ExecutionSummaryResponse(
                processed=result.summary.processed,
                successful=result.summary.successful,
                failed=result.summary.failed,
                skipped=result.summary.skipped,
            ),
            warnings=result.warnings,
            metadata=result.metadata,
            execution_id=result.execution_id,
            error_message=result.error_message,
        )


class SequenceResponse(ApiModel):
    """Settings of a number sequence and the number it hands out next."""
    document_type: DocumentType
    format: str
    digit_count: int
    current_year: int
    next_number: int
    next_invoice_number: str

    @classmethod
    def from_state(cls, state: SequenceState) -> "SequenceResponse":
        return cls(
            document_type=state.document_type,
            format=state.format,
            digit_count=state.digit_count,
            current_year=state.current_year,
            next_number=state.next_number,
            next_invoice_number=state.next_invoice_number,
        )


class BatchFailureResponse(ApiModel):
    id: str
    error: str


class BatchResponse(ApiModel):
    """Outcome of a batch action."""
    action: str
    success: list[str]
    failed: list[BatchFailureResponse]
    total_processed: int
    summary: str

    @classmethod
    def from_outcome(cls, outcome: BatchActionOutcome) -> "BatchResponse":
        return cls(
            action=outcome.action.value,
            success=outcome.result.success,
            failed=[BatchFailureResponse(id=f.id, error=f.error) for f in outcome.result.failed],
            total_processed=outcome.result.total_processed,
            summary=outcome.summary,
        )


class HealthResponse(ApiModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    database: str = "connected"


class ErrorResponse(ApiModel):
    """Standard error response."""
    error: str
    detail: str | None = None
