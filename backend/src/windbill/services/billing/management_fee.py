"""
Management fee rules: one invoice from the management company.

The fee is either a fixed amount or a percentage of a base value:
    TOTAL_CAPITAL    total capital of the fund (or of all active funds)
    ANNUAL_REVENUE   net operator revenue settled for the fund's parks
                     (or all of the tenant's parks) over the last twelve months
    NET_ASSET_VALUE  capital contributions of active shareholders
"""

from datetime import date
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from windbill.domain.models import BillingTarget, DocumentType, EntityStatus, LineDraft, RuleType
from windbill.domain.tax import percentage_of

from windbill.infrastructure.database import EnergySettlement, Fund, FundPark, Shareholder

from .base import RuleHandler, TargetResolution
from .parameters import ManagementFeeParameters

DEFAULT_RECIPIENT = "Management company"


async def get_annual_revenue(
    session: AsyncSession,
    tenant_id: str,
    fund_id: str | None,
    today: date,
) -> Decimal:
    """
    Net operator revenue of the twelve months up to ``today``.

    Monthly settlements count from the same month one year back; annual
    settlements (no month) of that year count in full.
    """
    cutoff_year, cutoff_month = today.year - 1, today.month
    stmt = select(func.coalesce(func.sum(EnergySettlement.net_operator_revenue), 0)).where(
        EnergySettlement.tenant_id == tenant_id,
        or_(
            EnergySettlement.year > cutoff_year,
            and_(EnergySettlement.year == cutoff_year, EnergySettlement.month >= cutoff_month),
            and_(EnergySettlement.year == cutoff_year, EnergySettlement.month.is_(None)),
        ),
    )
    if fund_id:
        park_ids = (await session.scalars(select(FundPark.park_id).where(FundPark.fund_id == fund_id))).all()
        if not park_ids:
            return Decimal("0")
        stmt = stmt.where(EnergySettlement.park_id.in_(park_ids))

    total = await session.scalar(stmt)
    return Decimal(str(total or 0))


async def get_base_value(
    session: AsyncSession,
    tenant_id: str,
    fund_id: str | None,
    base_value: str,
    today: date,
) -> Decimal:
    """Sum the configured base value for a fund or the whole tenant."""
    if base_value == "ANNUAL_REVENUE":
        return await get_annual_revenue(session, tenant_id, fund_id, today)

    if base_value == "TOTAL_CAPITAL":
        stmt = select(func.coalesce(func.sum(Fund.total_capital), 0)).where(Fund.tenant_id == tenant_id)
        if fund_id:
            stmt = stmt.where(Fund.id == fund_id)
        else:
            stmt = stmt.where(Fund.status == EntityStatus.ACTIVE.value)
    else:
        stmt = (
            select(func.coalesce(func.sum(Shareholder.capital_contribution), 0))
            .where(
                Shareholder.tenant_id == tenant_id,
                Shareholder.status == EntityStatus.ACTIVE.value,
            )
        )
        if fund_id:
            stmt = stmt.where(Shareholder.fund_id == fund_id)

    total = await session.scalar(stmt)
    return Decimal(str(total or 0))


class ManagementFeeHandler(RuleHandler):
    rule_type = RuleType.MANAGEMENT_FEE
    parameters_model = ManagementFeeParameters

    async def resolve_targets(
        self,
        session: AsyncSession,
        tenant_id: str,
        params: ManagementFeeParameters,
        today: date,
    ) -> TargetResolution:
        if params.calculation_type == "FIXED":
            amount = params.amount
            details = f"Fixed amount: {amount:.2f} EUR"
        else:
            base = await get_base_value(session, tenant_id, params.fund_id, params.base_value, today)
            amount = percentage_of(base, params.percentage)
            details = f"{params.percentage}% of {base:.2f} EUR ({params.base_value})"

        quarter = (today.month - 1) // 3 + 1
        description = params.description or f"Management fee Q{quarter}/{today.year}"

        target = BillingTarget(
            recipient_name=params.recipient_name or DEFAULT_RECIPIENT,
            document_type=DocumentType.INVOICE,
            lines=[
                LineDraft(
                    description=description,
                    quantity=Decimal("1"),
                    unit_price=amount,
                    tax_type=params.tax_type,
                    reference_type="MANAGEMENT_FEE",
                )
            ],
            recipient_type="vendor",
            recipient_address=params.recipient_address,
            due_days=params.due_days,
            notes=f"Calculation: {details}",
            fund_id=params.fund_id,
            park_id=params.park_id,
        )
        if amount <= 0:
            target.skip_reason = (
                "Base value or percentage is zero"
                if params.calculation_type == "PERCENTAGE"
                else "Fixed amount is zero or negative"
            )

        return TargetResolution(
            targets=[target],
            metadata={"calculationType": params.calculation_type, "calculationDetails": details},
        )
