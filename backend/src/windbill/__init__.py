"""
Windbill - billing backend for wind-park operators.

Billing rules, invoice numbering, bulk actions and SEPA payment exports.
"""

__version__ = "0.3.0"
