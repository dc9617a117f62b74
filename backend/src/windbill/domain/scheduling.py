"""
Next-run calculation for scheduled billing rules.

Standard frequencies run at midnight on ``day_of_month`` (clamped to
1-28 so February never needs special handling):
    MONTHLY      every month
    QUARTERLY    January, April, July, October
    SEMI_ANNUAL  January, July
    ANNUAL       January

CUSTOM_CRON accepts a five-field cron expression
(minute hour day-of-month month day-of-week) with ``*``, lists,
ranges and step values.
"""

from datetime import datetime, timedelta

from .models import Frequency

# One year of minutes; a cron expression that never matches stops here
MAX_CRON_ITERATIONS = 366 * 24 * 60

_FREQUENCY_MONTHS: dict[Frequency, tuple[int, ...]] = {
    Frequency.MONTHLY: tuple(range(1, 13)),
    Frequency.QUARTERLY: (1, 4, 7, 10),
    Frequency.SEMI_ANNUAL: (1, 7),
    Frequency.ANNUAL: (1,),
}


def _matches_field(value: int, expr: str) -> bool:
    """Check a single cron field against a value."""
    if expr == "*":
        return True
    if "," in expr:
        return any(_matches_field(value, part) for part in expr.split(","))
    if "/" in expr:
        base, step = expr.split("/", 1)
        interval = int(step)
        if interval <= 0:
            raise ValueError(f"Invalid step in cron field: {expr}")
        if base == "*":
            return value % interval == 0
        start = int(base)
        return value >= start and (value - start) % interval == 0
    if "-" in expr:
        start, end = (int(v) for v in expr.split("-", 1))
        return start <= value <= end
    return value == int(expr)


def _matches_cron(moment: datetime, fields: list[str]) -> bool:
    minute, hour, day, month, weekday = fields
    # cron counts Sunday as 0, Python as 6
    cron_weekday = (moment.weekday() + 1) % 7
    return (
        _matches_field(moment.minute, minute)
        and _matches_field(moment.hour, hour)
        and _matches_field(moment.day, day)
        and _matches_field(moment.month, month)
        and _matches_field(cron_weekday, weekday)
    )


def next_cron_runs(pattern: str, now: datetime, count: int = 1) -> list[datetime]:
    """
    Return up to ``count`` future minutes matching a cron expression.

    Raises:
        ValueError: If the expression does not have five fields or a
            field cannot be parsed
    """
    fields = pattern.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {pattern}")

    runs: list[datetime] = []
    current = now.replace(second=0, microsecond=0)
    for _ in range(MAX_CRON_ITERATIONS):
        if len(runs) >= count:
            break
        current += timedelta(minutes=1)
        if _matches_cron(current, fields):
            runs.append(current)
    return runs


def validate_cron_expression(pattern: str) -> str | None:
    """Return an error message, or None if the expression is usable."""
    try:
        runs = next_cron_runs(pattern, datetime.now(), count=1)
    except ValueError as e:
        return str(e)
    if not runs:
        return "Cron expression yields no execution time within a year"
    return None


def calculate_next_run(
    frequency: Frequency,
    day_of_month: int | None = None,
    cron_pattern: str | None = None,
    now: datetime | None = None,
) -> datetime:
    """
    Compute the next scheduled run strictly after ``now``.

    Args:
        frequency: Rule frequency
        day_of_month: Day the rule runs on (1-28, default 1)
        cron_pattern: Required for CUSTOM_CRON
        now: Reference time. Defaults to the current time.

    Returns:
        Naive or aware datetime matching the tzinfo of ``now``
    """
    now = now or datetime.now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if frequency == Frequency.CUSTOM_CRON:
        if cron_pattern:
            runs = next_cron_runs(cron_pattern, now, count=1)
            if runs:
                return runs[0]
        return midnight + timedelta(days=1)

    day = min(max(day_of_month or 1, 1), 28)
    months = _FREQUENCY_MONTHS[frequency]

    for month in months:
        if month > now.month or (month == now.month and now.day < day):
            return midnight.replace(month=month, day=day)
    return midnight.replace(year=now.year + 1, month=months[0], day=day)
