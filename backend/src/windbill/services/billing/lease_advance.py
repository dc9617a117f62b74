"""
Lease advance rules: monthly advance credit notes for land lessors.

Advances are paid during the year and reconciled in the annual lease
settlement. Amounts follow lease payments, prorated by days for partial
months. Each lease gets at most one advance per month: an advance that
exists and is not cancelled makes the lease a skipped target.
"""

import calendar
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from windbill.domain.models import BillingTarget, DocumentType, InvoiceStatus, LineDraft, RuleType
from windbill.domain.tax import round_currency
from windbill.infrastructure.database import Invoice

from .base import RuleHandler, TargetResolution
from .lease_payment import calculate_proration_factor, load_active_leases
from .parameters import LeaseAdvanceParameters


def advance_reference(lease_id: str, year: int, month: int) -> str:
    """Internal reference marking the advance of one lease and month."""
    return f"PV-{year}-{month:02d}-{lease_id[:8]}"


async def existing_advances(session: AsyncSession, tenant_id: str, references: list[str]) -> set[str]:
    """References among ``references`` that already have a live advance."""
    if not references:
        return set()
    rows = await session.scalars(
        select(Invoice.internal_reference).where(
            Invoice.tenant_id == tenant_id,
            Invoice.invoice_type == DocumentType.CREDIT_NOTE.value,
            Invoice.status != InvoiceStatus.CANCELLED.value,
            Invoice.internal_reference.in_(references),
        )
    )
    return set(rows.all())


class LeaseAdvanceHandler(RuleHandler):
    rule_type = RuleType.LEASE_ADVANCE
    parameters_model = LeaseAdvanceParameters

    async def resolve_targets(
        self,
        session: AsyncSession,
        tenant_id: str,
        params: LeaseAdvanceParameters,
        today: date,
    ) -> TargetResolution:
        year = params.year or today.year
        month = params.month or today.month
        month_start = date(year, month, 1)
        month_end = date(year, month, calendar.monthrange(year, month)[1])

        leases = await load_active_leases(session, tenant_id, month_start, month_end, params.park_id)

        resolution = TargetResolution(metadata={"year": year, "month": month, "leases": len(leases)})
        if not leases:
            resolution.warnings.append(f"No active leases for {month:02d}/{year}")
            return resolution

        references = {lease.id: advance_reference(lease.id, year, month) for lease in leases}
        already_created = await existing_advances(session, tenant_id, list(references.values()))

        for lease in leases:
            factor = calculate_proration_factor(year, month, lease.start_date, lease.end_date)
            amount = round_currency(lease.monthly_rent * factor)
            description = f"Lease advance {month:02d}/{year}"
            if factor != 1:
                description += f" (partial month, {factor * 100:.0f}%)"

            target = BillingTarget(
                recipient_name=lease.lessor_name,
                document_type=DocumentType.CREDIT_NOTE,
                lines=[
                    LineDraft(
                        description=description,
                        quantity=Decimal("1"),
                        unit_price=amount,
                        tax_type=params.tax_type,
                        reference_type="LEASE_ADVANCE",
                        reference_id=lease.id,
                    )
                ],
                recipient_type="lessor",
                recipient_address=lease.lessor_address,
                invoice_date=today,
                due_days=params.due_days,
                payment_reference=f"Lease advance {month:02d}/{year}",
                internal_reference=references[lease.id],
                service_start_date=max(lease.start_date, month_start),
                service_end_date=min(lease.end_date, month_end) if lease.end_date else month_end,
                park_id=lease.park_id,
                lease_id=lease.id,
            )
            if references[lease.id] in already_created:
                target.skip_reason = f"Advance for {month:02d}/{year} already created"
            elif amount <= 0:
                target.skip_reason = "Calculated advance is zero or negative"
            resolution.targets.append(target)

        return resolution
