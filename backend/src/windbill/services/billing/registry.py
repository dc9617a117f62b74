"""Lookup of rule handlers by rule type."""

from windbill.domain.models import RuleType
from windbill.exceptions import ValidationError

from .base import RuleHandler
from .custom import CustomRuleHandler
from .distribution import DistributionHandler
from .lease_advance import LeaseAdvanceHandler
from .lease_payment import LeasePaymentHandler
from .management_fee import ManagementFeeHandler

HANDLERS: dict[RuleType, RuleHandler] = {
    handler.rule_type: handler
    for handler in (
        LeasePaymentHandler(),
        LeaseAdvanceHandler(),
        DistributionHandler(),
        ManagementFeeHandler(),
        CustomRuleHandler(),
    )
}


def get_handler(rule_type: RuleType | str) -> RuleHandler:
    """
    Return the handler for a rule type.

    Raises:
        ValidationError: If the rule type is unknown
    """
    try:
        return HANDLERS[RuleType(rule_type)]
    except (KeyError, ValueError):
        value = rule_type.value if isinstance(rule_type, RuleType) else rule_type
        raise ValidationError(f"Unsupported rule type: {value}") from None
