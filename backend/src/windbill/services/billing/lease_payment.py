"""
Lease payment rules: monthly rent credit notes for land lessors.

Partial months are prorated by days: a lease starting on the 16th of a
30-day month is billed 15/30 of its monthly rent for that month.
"""

import calendar
from datetime import date
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from windbill.domain.models import (
    BillingTarget,
    DocumentType,
    EntityStatus,
    LineDraft,
    RuleType,
    TaxType,
)
from windbill.domain.tax import round_currency
from windbill.infrastructure.database import Lease

from .base import RuleHandler, TargetResolution
from .parameters import LeasePaymentParameters

PRORATION_PRECISION = Decimal("0.000001")


def calculate_proration_factor(
    year: int,
    month: int,
    lease_start: date,
    lease_end: date | None,
) -> Decimal:
    """
    Fraction of a billing month covered by a lease.

    Returns:
        1 for a fully covered month, 0 when the lease lies entirely
        outside it, otherwise billable days / days in month rounded to
        six places.
    """
    days_in_month = calendar.monthrange(year, month)[1]
    month_start = date(year, month, 1)
    month_end = date(year, month, days_in_month)

    if lease_start > month_end or (lease_end is not None and lease_end < month_start):
        return Decimal("0")

    first_day = 1 if lease_start <= month_start else lease_start.day
    last_day = days_in_month if lease_end is None or lease_end >= month_end else lease_end.day
    billable_days = last_day - first_day + 1

    if billable_days <= 0:
        return Decimal("0")
    if billable_days == days_in_month:
        return Decimal("1")
    return (Decimal(billable_days) / Decimal(days_in_month)).quantize(PRORATION_PRECISION)


async def load_active_leases(
    session: AsyncSession,
    tenant_id: str,
    month_start: date,
    month_end: date,
    park_id: str | None = None,
) -> list[Lease]:
    """Active leases of a tenant overlapping a billing month."""
    stmt = (
        select(Lease)
        .where(
            Lease.tenant_id == tenant_id,
            Lease.status == EntityStatus.ACTIVE.value,
            Lease.start_date <= month_end,
            or_(Lease.end_date.is_(None), Lease.end_date >= month_start),
        )
        .order_by(Lease.lessor_name)
    )
    if park_id:
        stmt = stmt.where(Lease.park_id == park_id)
    return list((await session.scalars(stmt)).all())


class LeasePaymentHandler(RuleHandler):
    rule_type = RuleType.LEASE_PAYMENT
    parameters_model = LeasePaymentParameters

    async def resolve_targets(
        self,
        session: AsyncSession,
        tenant_id: str,
        params: LeasePaymentParameters,
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

        for lease in leases:
            factor = calculate_proration_factor(year, month, lease.start_date, lease.end_date)
            amount = round_currency(lease.monthly_rent * factor)
            description = f"Lease payment {month:02d}/{year}"
            if factor != 1:
                description += f" (prorated {factor * 100:.2f}%)"

            target = BillingTarget(
                recipient_name=lease.lessor_name,
                document_type=DocumentType.CREDIT_NOTE,
                lines=[
                    LineDraft(
                        description=description,
                        quantity=Decimal("1"),
                        unit_price=amount,
                        tax_type=params.tax_type or TaxType(lease.tax_type),
                        unit="Monat",
                        reference_type="LEASE",
                        reference_id=lease.id,
                    )
                ],
                recipient_type="lessor",
                recipient_address=lease.lessor_address,
                invoice_date=today,
                park_id=lease.park_id,
                lease_id=lease.id,
            )
            if amount <= 0:
                target.skip_reason = "Calculated rent is zero or negative"
            resolution.targets.append(target)

        return resolution
