"""
Services package - Business logic on top of the database.

Includes number allocation, billing rule execution, batch actions,
SEPA exports, notifications and the rule scheduler.
"""

from .batch import BatchActionService, process_batch
from .billing import BillingRuleEngine, BillingRuleService
from .notifications import NotificationQueue
from .sepa import SepaExportService
from .sequences import SequenceAllocator

__all__ = [
    "BatchActionService",
    "BillingRuleEngine",
    "BillingRuleService",
    "NotificationQueue",
    "SepaExportService",
    "SequenceAllocator",
    "process_batch",
]
