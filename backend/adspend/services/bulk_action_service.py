"""
Bulk Action Executor — Apply one compound rule to many ad sets or campaigns.

Flow:
  1. compute the new budget of every adjustable entity (unchanged ones are dropped)
  2. push every change to the platform concurrently and wait for all of them
  3. tally successes and failures
  4. write one audit entry per successful change, as a single batch

The audit batch runs after the platform calls have settled. If it fails the
budgets have still changed on the platform, so the counts are kept and the
result is flagged with ``audit_logged=False``.
"""

import asyncio
import logging
from typing import Iterable, Optional, Protocol
from pydantic import BaseModel
from adspend.clock import Clock, system_clock
from adspend.config import Settings, get_settings
from adspend.schemas import (
    AuditEntry, BudgetEntity, BulkActionResult, MetricsSnapshot, ModifiedEntity, TargetKind,
)
from adspend.services import rule_engine
from adspend.services.audit_log import AuditLogWriter
from adspend.services.rule_engine import CompoundRule
from adspend.utils import to_naive_utc

logger = logging.getLogger(__name__)

CHANGE_THRESHOLD = 0.01

REASON_PREFIXES = {
    TargetKind.ADSET: "[Bulk Action]",
    TargetKind.CAMPAIGN: "[Campaign]",
}


class BudgetUpdater(Protocol):
    async def update_daily_budget(self, object_id: str, amount: float) -> dict: ...


class PlannedChange(BaseModel):
    entity: BudgetEntity
    new_budget: float

    @property
    def old_budget(self) -> float:
        return self.entity.budget


def _adjustable(entity: BudgetEntity) -> bool:
    """Only active entities carrying their own positive budget can be changed."""
    return entity.active and not entity.parent_managed and entity.budget > 0


def prefixed_reason(kind: TargetKind, reason: Optional[str]) -> str:
    prefix = REASON_PREFIXES[kind]
    return f"{prefix} {reason}".rstrip() if reason else prefix


class BulkActionExecutor:
    def __init__(
        self,
        client: BudgetUpdater,
        audit_log: AuditLogWriter,
        settings: Optional[Settings] = None,
        clock: Clock = system_clock,
    ):
        self.client = client
        self.audit_log = audit_log
        self.settings = settings or get_settings()
        self.clock = clock

    def plan(self, entities: Iterable[BudgetEntity], rule: CompoundRule) -> list[PlannedChange]:
        """New budget for every entity the rule actually changes. No platform calls."""
        changes = []
        for entity in entities:
            if not _adjustable(entity):
                continue
            new_budget = rule_engine.apply(entity, rule, min_budget=self.settings.min_budget)
            if abs(new_budget - entity.budget) < CHANGE_THRESHOLD:
                continue
            changes.append(PlannedChange(entity=entity, new_budget=round(new_budget, 2)))
        return changes

    def snapshot_for(self, entity: BudgetEntity) -> MetricsSnapshot:
        """Metrics to freeze into the audit entry; profit is estimated from sales when missing."""
        metrics = entity.metrics
        if metrics.profit is None and metrics.sales is not None:
            profit = metrics.sales * self.settings.revenue_per_sale - (metrics.spend or 0.0)
            return metrics.model_copy(update={"profit": round(profit, 2)})
        return metrics

    async def execute(
        self,
        entities: Iterable[BudgetEntity],
        rule: CompoundRule,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> BulkActionResult:
        entities = list(entities)
        changes = self.plan(entities, rule)
        result = BulkActionResult(unchanged=sum(1 for e in entities if _adjustable(e)) - len(changes))

        if not changes:
            logger.info("Bulk action: rule changes no budgets")
            return result

        logger.info(f"Bulk action: updating {len(changes)} budget(s)")
        outcomes = await asyncio.gather(
            *(self.client.update_daily_budget(c.entity.target.id, c.new_budget) for c in changes),
            return_exceptions=True,
        )

        modified_at = to_naive_utc(self.clock())
        entries = []
        for change, outcome in zip(changes, outcomes):
            target = change.entity.target
            if isinstance(outcome, BaseException):
                logger.error(f"Budget update failed for {target}: {outcome}")
                result.failed += 1
                result.failures.append({"id": target.id, "name": change.entity.name, "error": str(outcome)})
                continue
            result.success += 1
            result.modified.append(ModifiedEntity(
                name=change.entity.name or target.id,
                old_budget=change.old_budget,
                new_budget=change.new_budget,
            ))
            entries.append(AuditEntry(
                target=target,
                previous_budget=change.old_budget,
                new_budget=change.new_budget,
                reason=prefixed_reason(target.kind, reason),
                actor=actor,
                modified_at=modified_at,
                snapshot=self.snapshot_for(change.entity),
            ))

        if entries:
            try:
                await self.audit_log.append_batch(entries)
            except Exception as e:
                logger.error(f"Budgets updated but audit batch failed ({len(entries)} entries): {e}")
                result.audit_logged = False

        logger.info(f"Bulk action complete: success={result.success} failed={result.failed}")
        return result
