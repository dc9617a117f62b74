"""
Billing rules: parameter schemas, per-type handlers and the execution engine.
"""

from .base import RuleHandler, TargetResolution
from .engine import BillingRuleEngine
from .lease_payment import calculate_proration_factor
from .registry import get_handler
from .rules import BillingRuleService

__all__ = [
    "BillingRuleEngine",
    "BillingRuleService",
    "RuleHandler",
    "TargetResolution",
    "calculate_proration_factor",
    "get_handler",
]
