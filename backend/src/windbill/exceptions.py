"""
Exception hierarchy shared by services and API routes.

Services raise these; routers translate them to HTTP responses.
Per-item failures inside batches and rule runs are recorded as data
and never raised.
"""


class WindbillError(Exception):
    """Base class for all application errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(WindbillError):
    """Malformed input or a disallowed state transition."""

    status_code = 422


class NotFoundError(WindbillError):
    """Referenced entity does not exist for the tenant."""

    status_code = 404


class SequenceConflictError(WindbillError):
    """Number allocation kept losing to concurrent writers."""

    status_code = 409


class RuleInactiveError(WindbillError):
    """Billing rule is deactivated and the run was not forced."""

    status_code = 409


class RuleNotDueError(WindbillError):
    """Scheduled run requested before the rule's next run time."""

    status_code = 409


class NoEligiblePaymentsError(WindbillError):
    """SEPA export had no invoice left after filtering."""

    status_code = 422

    def __init__(self, message: str, skipped: list | None = None) -> None:
        super().__init__(message)
        self.skipped = skipped or []
