"""
Domain package - Core business logic with no external dependencies.

This package contains pure Python domain models, number formatting,
tax arithmetic, schedule calculation and SEPA field validation.
"""
