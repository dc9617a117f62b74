"""
Billing rule endpoints.

CRUD for rules plus manual execution. A manual execution is always a
forced run: it ignores the schedule and the active flag.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query, status

from windbill.api.dependencies import TenantId, get_rule_engine, get_rule_service, to_http_error
from windbill.api.schemas import (
    BillingRuleCreate,
    BillingRuleResponse,
    BillingRuleUpdate,
    ExecutionRecordResponse,
    RuleExecutionResponse,
)
from windbill.domain.models import RuleType
from windbill.exceptions import WindbillError
from windbill.services.billing import BillingRuleEngine, BillingRuleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing-rules", tags=["billing-rules"])

RuleService = Annotated[BillingRuleService, Depends(get_rule_service)]
RuleEngine = Annotated[BillingRuleEngine, Depends(get_rule_engine)]
OverrideParameters = Annotated[
    dict[str, Any] | None,
    Body(description="Parameters shallow-merged over the stored ones for this run"),
]


@router.post("", response_model=BillingRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    request: BillingRuleCreate,
    tenant_id: TenantId,
    service: RuleService,
) -> BillingRuleResponse:
    """Create a rule; its parameters are validated against the rule type."""
    try:
        rule = await service.create_rule(
            tenant_id,
            name=request.name,
            description=request.description,
            rule_type=request.rule_type,
            frequency=request.frequency,
            cron_pattern=request.cron_pattern,
            day_of_month=request.day_of_month,
            parameters=request.parameters,
            is_active=request.is_active,
        )
    except WindbillError as e:
        raise to_http_error(e) from e
    return BillingRuleResponse.from_rule(rule)


@router.get("", response_model=list[BillingRuleResponse])
async def list_rules(
    tenant_id: TenantId,
    service: RuleService,
    rule_type: Annotated[RuleType | None, Query(alias="ruleType")] = None,
    is_active: Annotated[bool | None, Query(alias="isActive")] = None,
) -> list[BillingRuleResponse]:
    rules = await service.list_rules(tenant_id, rule_type=rule_type, is_active=is_active)
    return [BillingRuleResponse.from_rule(rule) for rule in rules]


@router.get("/{rule_id}", response_model=BillingRuleResponse)
async def get_rule(rule_id: str, tenant_id: TenantId, service: RuleService) -> BillingRuleResponse:
    try:
        rule = await service.get_rule(tenant_id, rule_id)
    except WindbillError as e:
        raise to_http_error(e) from e
    return BillingRuleResponse.from_rule(rule)


@router.patch("/{rule_id}", response_model=BillingRuleResponse)
async def update_rule(
    rule_id: str,
    request: BillingRuleUpdate,
    tenant_id: TenantId,
    service: RuleService,
) -> BillingRuleResponse:
    """Partial update; only fields present in the body change."""
    changes = request.model_dump(exclude_unset=True)
    # null only clears optional fields
    for key in ("name", "frequency", "parameters", "is_active"):
        if key in changes and changes[key] is None:
            del changes[key]
    if "frequency" in changes:
        changes["frequency"] = changes["frequency"].value
    try:
        rule = await service.update_rule(tenant_id, rule_id, changes)
    except WindbillError as e:
        raise to_http_error(e) from e
    return BillingRuleResponse.from_rule(rule)


@router.delete("/{rule_id}", response_model=BillingRuleResponse)
async def deactivate_rule(rule_id: str, tenant_id: TenantId, service: RuleService) -> BillingRuleResponse:
    """Deactivate a rule. Rules are never hard-deleted."""
    try:
        rule = await service.deactivate_rule(tenant_id, rule_id)
    except WindbillError as e:
        raise to_http_error(e) from e
    return BillingRuleResponse.from_rule(rule)


@router.get("/{rule_id}/executions", response_model=list[ExecutionRecordResponse])
async def list_executions(
    rule_id: str,
    tenant_id: TenantId,
    service: RuleService,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[ExecutionRecordResponse]:
    try:
        executions = await service.list_executions(tenant_id, rule_id, limit=limit)
    except WindbillError as e:
        raise to_http_error(e) from e
    return [ExecutionRecordResponse.from_execution(e) for e in executions]


@router.post(
    "/{rule_id}/execute",
    response_model=RuleExecutionResponse,
    responses={
        404: {"description": "Rule or tenant not found"},
        409: {"description": "Number allocation conflict"},
        422: {"description": "Invalid rule parameters"},
    },
)
async def execute_rule(
    rule_id: str,
    tenant_id: TenantId,
    engine: RuleEngine,
    override_parameters: OverrideParameters = None,
    dry_run: Annotated[bool, Query(alias="dryRun")] = False,
) -> RuleExecutionResponse:
    """
    Run a rule now.

    With ``dryRun=true`` nothing is persisted and the response shows the
    numbers the documents would receive.
    """
    try:
        result = await engine.execute_rule(
            tenant_id,
            rule_id,
            dry_run=dry_run,
            force_run=True,
            override_parameters=override_parameters,
        )
    except WindbillError as e:
        raise to_http_error(e) from e
    return RuleExecutionResponse.from_result(result)


@router.post("/{rule_id}/preview", response_model=RuleExecutionResponse)
async def preview_rule(
    rule_id: str,
    tenant_id: TenantId,
    engine: RuleEngine,
    override_parameters: OverrideParameters = None,
) -> RuleExecutionResponse:
    """Dry run shortcut."""
    try:
        result = await engine.preview_rule(tenant_id, rule_id, override_parameters=override_parameters)
    except WindbillError as e:
        raise to_http_error(e) from e
    return RuleExecutionResponse.from_result(result)
