"""
Billing rule management: create, list, update and deactivate rules.

Parameters are validated against the rule type's schema before they are
stored, so a stored rule always parses at execution time (unless a later
override breaks it).
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.domain.models import Frequency, RuleType
from windbill.domain.scheduling import calculate_next_run, validate_cron_expression
from windbill.exceptions import NotFoundError, ValidationError
from windbill.infrastructure.database import BillingRule, BillingRuleExecution, utcnow

from .registry import get_handler

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "name",
    "description",
    "frequency",
    "cron_pattern",
    "day_of_month",
    "parameters",
    "is_active",
}
SCHEDULE_FIELDS = {"frequency", "cron_pattern", "day_of_month", "is_active"}


def check_schedule(frequency: Frequency, day_of_month: int | None, cron_pattern: str | None) -> None:
    """
    Raises:
        ValidationError: If the schedule fields do not fit together
    """
    if day_of_month is not None and not 1 <= day_of_month <= 28:
        raise ValidationError("dayOfMonth must be between 1 and 28")
    if frequency == Frequency.CUSTOM_CRON:
        if not cron_pattern:
            raise ValidationError("cronPattern is required for CUSTOM_CRON rules")
        problem = validate_cron_expression(cron_pattern)
        if problem:
            raise ValidationError(f"Invalid cron pattern: {problem}")


def schedule_next_run(rule: BillingRule, now: datetime) -> datetime | None:
    """Next run of an active rule; inactive rules are never scheduled."""
    if not rule.is_active:
        return None
    return calculate_next_run(
        Frequency(rule.frequency),
        day_of_month=rule.day_of_month,
        cron_pattern=rule.cron_pattern,
        now=now,
    )


class BillingRuleService:
    """CRUD for billing rules scoped to one tenant per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _get(session: AsyncSession, tenant_id: str, rule_id: str) -> BillingRule:
        rule = await session.scalar(
            select(BillingRule).where(BillingRule.id == rule_id, BillingRule.tenant_id == tenant_id)
        )
        if rule is None:
            raise NotFoundError(f"Billing rule {rule_id} not found")
        return rule

    async def create_rule(
        self,
        tenant_id: str,
        *,
        name: str,
        rule_type: RuleType,
        frequency: Frequency,
        parameters: dict[str, Any],
        description: str | None = None,
        day_of_month: int | None = None,
        cron_pattern: str | None = None,
        is_active: bool = True,
        now: datetime | None = None,
    ) -> BillingRule:
        """
        Validate and store a new rule.

        Raises:
            ValidationError: If parameters or schedule are invalid
        """
        params = get_handler(rule_type).parse_parameters(parameters)
        check_schedule(frequency, day_of_month, cron_pattern)

        rule = BillingRule(
            tenant_id=tenant_id,
            name=name,
            description=description,
            rule_type=rule_type.value,
            frequency=frequency.value,
            day_of_month=day_of_month,
            cron_pattern=cron_pattern if frequency == Frequency.CUSTOM_CRON else None,
            parameters=params.to_json(),
            is_active=is_active,
        )
        rule.next_run_at = schedule_next_run(rule, now or utcnow())

        async with self._session_factory() as session:
            async with session.begin():
                session.add(rule)

        logger.info(f"Created billing rule {rule.id} ({rule.rule_type}) for tenant {tenant_id}")
        return rule

    async def list_rules(
        self,
        tenant_id: str,
        rule_type: RuleType | None = None,
        is_active: bool | None = None,
    ) -> list[BillingRule]:
        stmt = select(BillingRule).where(BillingRule.tenant_id == tenant_id)
        if rule_type is not None:
            stmt = stmt.where(BillingRule.rule_type == rule_type.value)
        if is_active is not None:
            stmt = stmt.where(BillingRule.is_active == is_active)

        async with self._session_factory() as session:
            return list((await session.scalars(stmt.order_by(BillingRule.name))).all())

    async def get_rule(self, tenant_id: str, rule_id: str) -> BillingRule:
        async with self._session_factory() as session:
            return await self._get(session, tenant_id, rule_id)

    async def list_executions(
        self,
        tenant_id: str,
        rule_id: str,
        limit: int = 20,
    ) -> list[BillingRuleExecution]:
        """Most recent executions of a rule, newest first."""
        async with self._session_factory() as session:
            await self._get(session, tenant_id, rule_id)
            executions = await session.scalars(
                select(BillingRuleExecution)
                .where(
                    BillingRuleExecution.rule_id == rule_id,
                    BillingRuleExecution.tenant_id == tenant_id,
                )
                .order_by(BillingRuleExecution.started_at.desc())
                .limit(limit)
            )
            return list(executions.all())

    async def update_rule(
        self,
        tenant_id: str,
        rule_id: str,
        changes: dict[str, Any],
        now: datetime | None = None,
    ) -> BillingRule:
        """
        Apply a partial update.

        ``changes`` uses attribute names; keys outside UPDATABLE_FIELDS
        are rejected. The next run is recomputed when the schedule or the
        active flag changes.

        Raises:
            NotFoundError: If the rule does not exist for the tenant
            ValidationError: If the result would be an invalid rule
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        async with self._session_factory() as session:
            async with session.begin():
                rule = await self._get(session, tenant_id, rule_id)

                if "parameters" in changes:
                    params = get_handler(rule.rule_type).parse_parameters(changes["parameters"])
                    rule.parameters = params.to_json()

                for key in ("name", "description", "day_of_month", "cron_pattern", "is_active"):
                    if key in changes:
                        setattr(rule, key, changes[key])
                if "frequency" in changes:
                    rule.frequency = Frequency(changes["frequency"]).value

                frequency = Frequency(rule.frequency)
                check_schedule(frequency, rule.day_of_month, rule.cron_pattern)
                if frequency != Frequency.CUSTOM_CRON:
                    rule.cron_pattern = None

                if SCHEDULE_FIELDS & set(changes):
                    rule.next_run_at = schedule_next_run(rule, now or utcnow())
                    rule.version = (rule.version or 0) + 1

        logger.info(f"Updated billing rule {rule_id} for tenant {tenant_id}: {sorted(changes)}")
        return rule

    async def deactivate_rule(self, tenant_id: str, rule_id: str) -> BillingRule:
        """Soft delete: the rule stays for its execution history."""
        return await self.update_rule(tenant_id, rule_id, {"is_active": False})
