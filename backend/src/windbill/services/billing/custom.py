"""
Custom rules: one invoice or credit note from explicitly configured items.
"""

from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from windbill.domain.models import BillingTarget, LineDraft, RuleType

from .base import RuleHandler, TargetResolution
from .parameters import CustomRuleParameters

DEFAULT_RECIPIENT = "Recipient"


class CustomRuleHandler(RuleHandler):
    rule_type = RuleType.CUSTOM
    parameters_model = CustomRuleParameters

    async def resolve_targets(
        self,
        session: AsyncSession,
        tenant_id: str,
        params: CustomRuleParameters,
        today: date,
    ) -> TargetResolution:
        lines = [
            LineDraft(
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                tax_type=item.tax_type or params.tax_type,
                unit=item.unit or "Stueck",
            )
            for item in params.items
        ]
        target = BillingTarget(
            recipient_name=params.recipient_name or DEFAULT_RECIPIENT,
            document_type=params.invoice_type,
            lines=lines,
            recipient_type=params.recipient_type,
            recipient_address=params.recipient_address,
            notes=params.notes,
            fund_id=params.fund_id,
            park_id=params.park_id,
            shareholder_id=params.shareholder_id,
            lease_id=params.lease_id,
        )
        return TargetResolution(targets=[target], metadata={"itemCount": len(lines)})
