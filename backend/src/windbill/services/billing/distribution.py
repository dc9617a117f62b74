"""
Distribution rules: payouts to the shareholders of a fund.

Every active shareholder with a positive distribution percentage gets a
tax-exempt credit note for their share of the configured total.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from windbill.domain.models import (
    BillingTarget,
    DocumentType,
    EntityStatus,
    LineDraft,
    RuleType,
    TaxType,
)
from windbill.domain.tax import percentage_of
from windbill.exceptions import NotFoundError
from windbill.infrastructure.database import Fund, Shareholder

from .base import RuleHandler, TargetResolution
from .parameters import DistributionParameters

logger = logging.getLogger(__name__)

# Allowed deviation of the summed percentages from 100
PERCENTAGE_TOLERANCE = Decimal("0.01")


def format_address(shareholder: Shareholder) -> str:
    """Street on the first line, postal code and city on the second."""
    city_line = f"{shareholder.postal_code or ''} {shareholder.city or ''}".strip()
    return "\n".join(part for part in (shareholder.street, city_line) if part)


class DistributionHandler(RuleHandler):
    rule_type = RuleType.DISTRIBUTION
    parameters_model = DistributionParameters

    async def resolve_targets(
        self,
        session: AsyncSession,
        tenant_id: str,
        params: DistributionParameters,
        today: date,
    ) -> TargetResolution:
        fund = await session.scalar(
            select(Fund).where(Fund.id == params.fund_id, Fund.tenant_id == tenant_id)
        )
        if fund is None:
            raise NotFoundError(f"Fund {params.fund_id} not found")

        shareholders = (
            await session.scalars(
                select(Shareholder)
                .where(
                    Shareholder.fund_id == fund.id,
                    Shareholder.tenant_id == tenant_id,
                    Shareholder.status == EntityStatus.ACTIVE.value,
                    Shareholder.distribution_percentage > 0,
                )
                .order_by(Shareholder.shareholder_number, Shareholder.name)
            )
        ).all()

        resolution = TargetResolution(metadata={"fundId": fund.id, "fundName": fund.name})
        if not shareholders:
            resolution.warnings.append(f"No shareholders with a distribution share in fund {fund.name}")
            return resolution

        total_percentage = sum((s.distribution_percentage for s in shareholders), Decimal("0"))
        resolution.metadata["totalPercentage"] = str(total_percentage)
        if abs(total_percentage - 100) > PERCENTAGE_TOLERANCE:
            resolution.warnings.append(
                f"Distribution percentages sum to {total_percentage:.2f}% (expected 100%)"
            )
            logger.warning(f"Fund {fund.id}: distribution percentages sum to {total_percentage}")

        description = params.description or f"Distribution {today.year}"
        invoice_date = params.distribution_date or today

        for shareholder in shareholders:
            percentage = shareholder.distribution_percentage
            amount = percentage_of(params.total_amount, percentage)
            target = BillingTarget(
                recipient_name=shareholder.name,
                document_type=DocumentType.CREDIT_NOTE,
                lines=[
                    LineDraft(
                        description=f"{description} - share {percentage:.3f}%",
                        quantity=Decimal("1"),
                        unit_price=amount,
                        tax_type=TaxType.EXEMPT,
                        reference_type="DISTRIBUTION",
                        reference_id=fund.id,
                    )
                ],
                recipient_type="shareholder",
                recipient_address=format_address(shareholder),
                invoice_date=invoice_date,
                notes=(
                    f"Bank account:\n{shareholder.bank_name or ''}\n"
                    f"IBAN: {shareholder.bank_iban or ''}\nBIC: {shareholder.bank_bic or ''}"
                ),
                fund_id=fund.id,
                shareholder_id=shareholder.id,
            )
            if amount <= 0:
                target.skip_reason = "Calculated amount is zero or negative"
            resolution.targets.append(target)

        return resolution
