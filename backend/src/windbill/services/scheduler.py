"""
Periodic execution of due billing rules.

run_due_rules is one sweep; run_scheduler_loop repeats it at a fixed
interval until cancelled. Each rule runs as a scheduled (non-forced)
execution, so the engine re-checks the due date and advances the
schedule itself.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from windbill.domain.models import ExecutionStatus
from windbill.exceptions import RuleNotDueError
from windbill.infrastructure.database import BillingRule, utcnow

from .billing import BillingRuleEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """What one scheduler sweep did."""
    executed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


async def run_due_rules(
    engine: BillingRuleEngine,
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
) -> SweepResult:
    """Execute every active rule whose next run time has passed."""
    now = now or utcnow()
    async with session_factory() as session:
        due = (
            await session.execute(
                select(BillingRule.id, BillingRule.tenant_id)
                .where(
                    BillingRule.is_active.is_(True),
                    BillingRule.next_run_at.is_not(None),
                    BillingRule.next_run_at <= now,
                )
                .order_by(BillingRule.next_run_at)
            )
        ).all()

    sweep = SweepResult()
    for rule_id, tenant_id in due:
        try:
            result = await engine.execute_rule(tenant_id, rule_id, now=now)
        except RuleNotDueError:
            # Another instance ran it between our query and the execution
            continue
        except Exception as e:
            logger.exception(f"Scheduled execution of rule {rule_id} failed")
            sweep.failed[rule_id] = str(e)
            continue

        if result.status == ExecutionStatus.FAILED:
            sweep.failed[rule_id] = result.error_message or "All documents failed"
        else:
            sweep.executed.append(rule_id)

    if due:
        logger.info(f"Scheduler sweep: {len(sweep.executed)} rules executed, {len(sweep.failed)} failed")
    return sweep


async def run_scheduler_loop(
    engine: BillingRuleEngine,
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: float,
) -> None:
    """Sweep every ``interval_seconds`` until the task is cancelled."""
    logger.info(f"Rule scheduler running every {interval_seconds}s")
    while True:
        try:
            await run_due_rules(engine, session_factory)
        except Exception:
            logger.exception("Scheduler sweep failed")
        await asyncio.sleep(interval_seconds)
