"""
Rule handler interface.

A handler knows one rule type: how to validate its parameters and how
to turn them into billing targets. It never writes; document creation,
numbering and bookkeeping belong to the engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from windbill.domain.models import BillingTarget, RuleType
from windbill.exceptions import ValidationError

from .parameters import RuleParameters


@dataclass
class TargetResolution:
    """Targets of one run plus anything worth reporting about them."""
    targets: list[BillingTarget] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def format_pydantic_errors(error: PydanticValidationError) -> str:
    """Flatten pydantic errors into one readable line."""
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "parameters"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class RuleHandler(ABC):
    """Base class for rule type implementations."""

    rule_type: RuleType
    parameters_model: type[RuleParameters]

    def parse_parameters(self, raw: dict[str, Any]) -> RuleParameters:
        """
        Validate raw parameters.

        Raises:
            ValidationError: If the parameters do not fit this rule type
        """
        try:
            return self.parameters_model.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid parameters for {self.rule_type.value} rule: {format_pydantic_errors(e)}"
            ) from e

    @abstractmethod
    async def resolve_targets(
        self,
        session: AsyncSession,
        tenant_id: str,
        params: RuleParameters,
        today: date,
    ) -> TargetResolution:
        """Load matching entities and compute one target per entity."""
