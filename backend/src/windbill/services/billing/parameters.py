"""
Parameter schemas for each billing rule type.

Parameters are stored as camelCase JSON on the rule and validated
against these models before a run starts. Unknown fields are rejected.
"""

from datetime import date
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from windbill.domain.models import DocumentType, TaxType


class RuleParameters(BaseModel):
    """Base for all rule parameter models."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json(self) -> dict:
        """Representation stored on the rule row."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CustomItem(RuleParameters):
    """One explicit line of a custom rule."""
    description: str = Field(min_length=1, max_length=512)
    quantity: Decimal = Field(gt=0)
    unit: str | None = Field(default=None, max_length=32)
    unit_price: Decimal
    tax_type: TaxType | None = None


class CustomRuleParameters(RuleParameters):
    """A single document built from explicit items."""
    invoice_type: DocumentType
    items: list[CustomItem] = Field(min_length=1)
    recipient_type: str | None = None
    recipient_name: str | None = Field(default=None, max_length=256)
    recipient_address: str | None = None
    fund_id: str | None = None
    park_id: str | None = None
    shareholder_id: str | None = None
    lease_id: str | None = None
    notes: str | None = None
    tax_type: TaxType = TaxType.STANDARD


class DistributionParameters(RuleParameters):
    """Payout of a fixed total to a fund's shareholders."""
    fund_id: str
    total_amount: Decimal = Field(gt=0)
    description: str | None = Field(default=None, max_length=200)
    distribution_date: date | None = None
    notify_shareholders: bool = False


class ManagementFeeParameters(RuleParameters):
    """Fee charged by the management company, fixed or percentage based."""
    calculation_type: Literal["FIXED", "PERCENTAGE"]
    amount: Decimal | None = Field(default=None, gt=0)
    percentage: Decimal | None = Field(default=None, gt=0, le=100)
    base_value: Literal["TOTAL_CAPITAL", "ANNUAL_REVENUE", "NET_ASSET_VALUE"] | None = None
    fund_id: str | None = None
    park_id: str | None = None
    recipient_name: str | None = Field(default=None, max_length=256)
    recipient_address: str | None = None
    tax_type: TaxType = TaxType.STANDARD
    description: str | None = Field(default=None, max_length=200)
    due_days: int = Field(default=14, ge=1, le=365)

    @model_validator(mode="after")
    def check_calculation(self) -> "ManagementFeeParameters":
        if self.calculation_type == "FIXED" and self.amount is None:
            raise ValueError("amount is required for FIXED management fees")
        if self.calculation_type == "PERCENTAGE":
            if self.percentage is None or self.base_value is None:
                raise ValueError("percentage and baseValue are required for PERCENTAGE management fees")
        return self


class LeasePaymentParameters(RuleParameters):
    """Monthly rent credit notes for land lessors."""
    park_id: str | None = None
    year: int | None = Field(default=None, ge=2000, le=2100)
    month: int | None = Field(default=None, ge=1, le=12)
    tax_type: TaxType | None = None


class LeaseAdvanceParameters(RuleParameters):
    """Monthly advance credit notes for land lessors, settled once a year."""
    park_id: str | None = None
    year: int | None = Field(default=None, ge=2000, le=2100)
    month: int | None = Field(default=None, ge=1, le=12)
    tax_type: TaxType = TaxType.EXEMPT
    due_days: int | None = Field(default=None, ge=1, le=365)
