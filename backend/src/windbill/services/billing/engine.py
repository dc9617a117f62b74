"""
Billing rule execution orchestrator.

Coordinates one rule run:
1. Load the rule and check it may run now
2. Validate the stored parameters (merged with overrides)
3. Resolve billing targets through the rule type's handler
4. Claim a scheduled run by advancing the schedule
5. Create one document per target, each in its own transaction
6. Record the execution

A failing target never aborts the run; it is recorded in its result
slot and the remaining targets are still processed.
"""

import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.config import get_settings
from windbill.domain.models import (
    BillingTarget,
    ExecutionStatus,
    Frequency,
    InvoiceCreationResult,
    InvoiceStatus,
    RuleExecutionResult,
)
from windbill.domain.scheduling import calculate_next_run
from windbill.domain.tax import TaxAmounts, calculate_tax_amounts, document_totals
from windbill.exceptions import NotFoundError, RuleInactiveError, RuleNotDueError
from windbill.infrastructure.database import (
    BillingRule,
    BillingRuleExecution,
    Invoice,
    InvoiceItem,
    Tenant,
    as_utc,
    utcnow,
)

from ..notifications import NotificationQueue
from ..sequences import SequenceAllocator
from .registry import get_handler

logger = logging.getLogger(__name__)

RULE_EXECUTED_EVENT = "billing_rule.executed"


class BillingRuleEngine:
    """
    Runs billing rules against a tenant's data.

    Example:
        engine = BillingRuleEngine(get_session_factory())
        result = await engine.execute_rule(tenant_id, rule_id, dry_run=True)
        print(result.summary.successful, result.total_amount)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        allocator: SequenceAllocator | None = None,
        notifications: NotificationQueue | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.allocator = allocator or SequenceAllocator(session_factory)
        self.notifications = notifications

    async def preview_rule(
        self,
        tenant_id: str,
        rule_id: str,
        override_parameters: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RuleExecutionResult:
        """Dry run regardless of schedule and active flag."""
        return await self.execute_rule(
            tenant_id,
            rule_id,
            dry_run=True,
            force_run=True,
            override_parameters=override_parameters,
            now=now,
        )

    async def execute_rule(
        self,
        tenant_id: str,
        rule_id: str,
        dry_run: bool = False,
        force_run: bool = False,
        override_parameters: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RuleExecutionResult:
        """
        Execute a billing rule.

        Args:
            tenant_id: Tenant owning the rule
            rule_id: Rule to run
            dry_run: Compute everything but persist nothing
            force_run: Ignore the schedule and the active flag
            override_parameters: Shallow-merged over the stored parameters
            now: Reference time. Defaults to the current UTC time.

        Returns:
            RuleExecutionResult with one slot per resolved target

        Raises:
            NotFoundError: If the rule or tenant does not exist
            RuleInactiveError: If the rule is inactive and the run is not forced
            RuleNotDueError: If a scheduled run comes before next_run_at
            ValidationError: If the merged parameters are invalid
        """
        now = now or utcnow()
        today = now.date()

        async with self._session_factory() as session:
            rule = await session.scalar(
                select(BillingRule).where(BillingRule.id == rule_id, BillingRule.tenant_id == tenant_id)
            )
            if rule is None:
                raise NotFoundError(f"Billing rule {rule_id} not found")

            if not force_run:
                if not rule.is_active:
                    raise RuleInactiveError(f"Billing rule {rule.name} is inactive")
                next_run_at = as_utc(rule.next_run_at)
                if next_run_at is not None and next_run_at > now:
                    raise RuleNotDueError(
                        f"Billing rule {rule.name} is not due until {next_run_at.isoformat()}"
                    )

            handler = get_handler(rule.rule_type)
            raw_parameters = {**(rule.parameters or {}), **(override_parameters or {})}
            params = handler.parse_parameters(raw_parameters)

            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError(f"Tenant {tenant_id} not found")
            payment_term_days = tenant.payment_term_days or get_settings().payment_term_days

            logger.info(
                f"Executing rule {rule.id} ({rule.rule_type}) for tenant {tenant_id}"
                f"{' [dry run]' if dry_run else ''}{' [forced]' if force_run else ''}"
            )
            resolution = await handler.resolve_targets(session, tenant_id, params, today)

        if not dry_run and not force_run:
            await self._claim_run(rule, now)

        result = RuleExecutionResult(status=ExecutionStatus.SUCCESS, dry_run=dry_run)
        result.warnings.extend(resolution.warnings)
        result.metadata.update(resolution.metadata)
        result.metadata.update({"ruleId": rule.id, "ruleName": rule.name, "ruleType": rule.rule_type})
        if not resolution.targets and not resolution.warnings:
            result.warnings.append("No billable entities found")

        projected = Counter()
        for target in resolution.targets:
            slot = await self._process_target(
                target,
                tenant_id=tenant_id,
                rule_id=rule.id,
                today=today,
                payment_term_days=payment_term_days,
                dry_run=dry_run,
                offset=projected[target.document_type],
            )
            if dry_run and slot.success:
                projected[target.document_type] += 1
            result.record(slot)

        result.finalize()

        if dry_run:
            result.execution_id = str(uuid4())
        else:
            result.execution_id = await self._record_execution(rule, result, force_run, now)
            if result.invoices_created and self.notifications is not None:
                self.notifications.enqueue(
                    RULE_EXECUTED_EVENT,
                    {
                        "tenantId": tenant_id,
                        "ruleId": rule.id,
                        "executionId": result.execution_id,
                        "invoicesCreated": result.invoices_created,
                        "totalAmount": str(result.total_amount),
                    },
                )

        logger.info(
            f"Rule {rule.id} finished with status {result.status.value}: "
            f"{result.summary.successful} successful, {result.summary.failed} failed, "
            f"{result.summary.skipped} skipped, total {result.total_amount}"
        )
        return result

    async def _process_target(
        self,
        target: BillingTarget,
        *,
        tenant_id: str,
        rule_id: str,
        today: date,
        payment_term_days: int,
        dry_run: bool,
        offset: int,
    ) -> InvoiceCreationResult:
        if target.skip_reason:
            return InvoiceCreationResult(
                success=False, recipient_name=target.recipient_name, error=target.skip_reason, skipped=True
            )

        totals = document_totals(target.lines)
        if totals.gross_amount <= 0:
            return InvoiceCreationResult(
                success=False,
                recipient_name=target.recipient_name,
                error="Amount is zero or negative",
                skipped=True,
            )

        try:
            if dry_run:
                number = await self.allocator.preview(tenant_id, target.document_type, today, offset=offset)
                return InvoiceCreationResult(
                    success=True,
                    recipient_name=target.recipient_name,
                    invoice_number=number,
                    amount=totals.gross_amount,
                )

            invoice = await self._create_document(
                target, totals, tenant_id, rule_id, today, payment_term_days
            )
            return InvoiceCreationResult(
                success=True,
                recipient_name=target.recipient_name,
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                amount=invoice.gross_amount,
            )
        except Exception as e:
            logger.warning(f"Could not create document for {target.recipient_name}: {e}")
            return InvoiceCreationResult(
                success=False, recipient_name=target.recipient_name, error=str(e)
            )

    async def _create_document(
        self,
        target: BillingTarget,
        totals: TaxAmounts,
        tenant_id: str,
        rule_id: str,
        today: date,
        payment_term_days: int,
    ) -> Invoice:
        """Allocate a number and insert the document in one transaction."""
        invoice_date = target.invoice_date or today
        due_days = target.due_days or payment_term_days

        async with self._session_factory() as session:
            async with session.begin():
                allocated = await self.allocator.allocate(
                    session, tenant_id, target.document_type, today
                )
                items = []
                for position, line in enumerate(target.lines, start=1):
                    amounts = calculate_tax_amounts(line.net_amount, line.tax_type)
                    items.append(
                        InvoiceItem(
                            position=position,
                            description=line.description,
                            quantity=line.quantity,
                            unit=line.unit,
                            unit_price=line.unit_price,
                            net_amount=amounts.net_amount,
                            tax_type=line.tax_type.value,
                            tax_rate=amounts.tax_rate,
                            tax_amount=amounts.tax_amount,
                            gross_amount=amounts.gross_amount,
                            reference_type=line.reference_type,
                            reference_id=line.reference_id,
                        )
                    )

                invoice = Invoice(
                    tenant_id=tenant_id,
                    invoice_type=target.document_type.value,
                    invoice_number=allocated.invoice_number,
                    invoice_date=invoice_date,
                    due_date=invoice_date + timedelta(days=due_days),
                    recipient_type=target.recipient_type,
                    recipient_name=target.recipient_name,
                    recipient_address=target.recipient_address,
                    payment_reference=target.payment_reference or allocated.invoice_number,
                    internal_reference=target.internal_reference,
                    service_start_date=target.service_start_date,
                    service_end_date=target.service_end_date,
                    net_amount=totals.net_amount,
                    tax_rate=totals.tax_rate,
                    tax_amount=totals.tax_amount,
                    gross_amount=totals.gross_amount,
                    status=InvoiceStatus.DRAFT.value,
                    notes=target.notes,
                    fund_id=target.fund_id,
                    park_id=target.park_id,
                    shareholder_id=target.shareholder_id,
                    lease_id=target.lease_id,
                    billing_rule_id=rule_id,
                    items=items,
                )
                session.add(invoice)

        logger.info(f"Created {target.document_type.value} {invoice.invoice_number} for {target.recipient_name}")
        return invoice

    async def _claim_run(self, rule: BillingRule, now: datetime) -> None:
        """
        Advance the schedule before any document exists.

        The update only matches the version read at the start of the run,
        so of two instances executing the same due rule exactly one wins.

        Raises:
            RuleNotDueError: If another run claimed the rule first
        """
        next_run_at = calculate_next_run(
            Frequency(rule.frequency),
            day_of_month=rule.day_of_month,
            cron_pattern=rule.cron_pattern,
            now=now,
        )
        async with self._session_factory() as session:
            async with session.begin():
                claimed = await session.execute(
                    update(BillingRule)
                    .where(BillingRule.id == rule.id, BillingRule.version == rule.version)
                    .values(next_run_at=next_run_at, version=rule.version + 1)
                    .execution_options(synchronize_session=False)
                )

        if claimed.rowcount != 1:
            logger.info(f"Rule {rule.id} was claimed by another run")
            raise RuleNotDueError(f"Billing rule {rule.name} is already being executed")
        logger.debug(f"Claimed rule {rule.id}, next run at {next_run_at}")

    async def _record_execution(
        self,
        rule: BillingRule,
        result: RuleExecutionResult,
        force_run: bool,
        now: datetime,
    ) -> str:
        """Write the audit row and stamp the last run time."""
        execution = BillingRuleExecution(
            rule_id=rule.id,
            tenant_id=rule.tenant_id,
            status=result.status.value,
            dry_run=False,
            forced=force_run,
            started_at=now,
            completed_at=utcnow(),
            invoices_created=result.invoices_created,
            total_amount=result.total_amount,
            error_message=result.error_message,
            details=result.to_dict(),
        )

        async with self._session_factory() as session:
            async with session.begin():
                session.add(execution)
                await session.execute(
                    update(BillingRule)
                    .where(BillingRule.id == rule.id)
                    .values(last_run_at=now)
                    .execution_options(synchronize_session=False)
                )

        return execution.id
