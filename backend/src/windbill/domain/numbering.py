"""
Invoice and credit note number formatting.

Templates use literal, case-sensitive placeholders:
    {YEAR}   four-digit year
    {YY}     last two digits of the year
    {MONTH}  1-based month, zero-padded to two digits
    {NUMBER} the counter, zero-padded to the sequence's digit count

Anything else in the template, including unknown or malformed
placeholders, is copied through unchanged.
"""

from datetime import date

from .models import DocumentType

NUMBER_PLACEHOLDER = "{NUMBER}"

DEFAULT_FORMATS: dict[DocumentType, str] = {
    DocumentType.INVOICE: "RG-{YEAR}-{NUMBER}",
    DocumentType.CREDIT_NOTE: "GS-{YEAR}-{NUMBER}",
}

DEFAULT_DIGIT_COUNT = 4


def generate_preview(
    format: str,
    number: int,
    digit_count: int,
    today: date | None = None,
) -> str:
    """
    Render a number template.

    Args:
        format: Template string with placeholders
        number: Counter value (positive)
        digit_count: Minimum width of {NUMBER}; longer numbers are not truncated
        today: Date used for {YEAR}, {YY} and {MONTH}. Defaults to today.

    Returns:
        The rendered number

    Example:
        >>> generate_preview("RG-{YEAR}-{NUMBER}", 7, 4, date(2025, 3, 1))
        'RG-2025-0007'
    """
    today = today or date.today()
    year = f"{today.year:04d}"
    return (
        format
        .replace("{YEAR}", year)
        .replace("{YY}", year[-2:])
        .replace("{MONTH}", f"{today.month:02d}")
        .replace(NUMBER_PLACEHOLDER, str(number).zfill(digit_count))
    )


def validate_format(format: str) -> list[str]:
    """
    Check a template before it is stored on a sequence.

    Returns a list of problems; an empty list means the template is usable.
    """
    problems = []
    if not format.strip():
        problems.append("Format must not be empty")
    if format.count(NUMBER_PLACEHOLDER) != 1:
        problems.append("Format must contain {NUMBER} exactly once")
    if len(format) > 50:
        problems.append("Format must be at most 50 characters")
    return problems
