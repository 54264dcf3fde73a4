"""
Decision Rule Evaluator — Classifies an ad set or campaign as keep, warning
or decision-needed from its daily budget and ROAS.

Gates, in order:
  1. budget managed by the parent campaign (CBO) → keep
  2. zero budget → keep
  3. budget modified within the grace period (60 min) → keep
  4. budget tier × ROAS band table below

  budget ≤ 4      ROAS < 1.8 keep              ≥ 1.8 decision-needed
  4 < b ≤ 10      < 1.0 warning   [1.0, 1.8) keep   ≥ 1.8 decision-needed
  10 < b ≤ 20     < 1.2 decision  [1.2, 1.6) keep   ≥ 1.6 decision-needed
  b > 20          < 1.3 decision  [1.3, 1.6) keep   ≥ 1.6 decision-needed

Anything the table does not cover (NaN, negative budgets) is a warning.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Iterable, Optional
from adspend.clock import Clock, system_clock
from adspend.schemas import BudgetEntity, DecisionStatus, TargetRef
from adspend.services.audit_log import AuditLogWriter
from adspend.utils import to_naive_utc

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MINUTES = 60

_WEIGHTS = {
    DecisionStatus.DECISION_NEEDED: 2,
    DecisionStatus.WARNING: 1,
}


def classify(budget: float, roas: float) -> DecisionStatus:
    """The budget tier × ROAS band table on its own, without any gate."""
    if math.isnan(budget) or math.isnan(roas) or budget < 0 or roas < 0:
        return DecisionStatus.WARNING

    if budget <= 4:
        return DecisionStatus.KEEP if roas < 1.8 else DecisionStatus.DECISION_NEEDED
    if budget <= 10:
        if roas < 1.0:
            return DecisionStatus.WARNING
        return DecisionStatus.KEEP if roas < 1.8 else DecisionStatus.DECISION_NEEDED
    if budget <= 20:
        if 1.2 <= roas < 1.6:
            return DecisionStatus.KEEP
        return DecisionStatus.DECISION_NEEDED
    if budget > 20:
        if 1.3 <= roas < 1.6:
            return DecisionStatus.KEEP
        return DecisionStatus.DECISION_NEEDED
    return DecisionStatus.WARNING


def decision_weight(status: DecisionStatus) -> int:
    """Sort key: decision-needed first, then warnings."""
    return _WEIGHTS.get(status, 0)


class DecisionEvaluator:
    def __init__(
        self,
        audit_log: AuditLogWriter,
        clock: Clock = system_clock,
        grace_minutes: int = DEFAULT_GRACE_MINUTES,
    ):
        self.audit_log = audit_log
        self.clock = clock
        self.grace = timedelta(minutes=grace_minutes)

    def _grace_cutoff(self) -> datetime:
        return to_naive_utc(self.clock()) - self.grace

    @staticmethod
    def _gate(budget: float, parent_managed: bool) -> Optional[DecisionStatus]:
        if parent_managed:
            return DecisionStatus.KEEP
        if budget == 0:
            return DecisionStatus.KEEP
        return None

    async def evaluate(
        self,
        budget: float,
        roas: float,
        target: TargetRef,
        parent_managed: bool = False,
    ) -> DecisionStatus:
        gated = self._gate(budget, parent_managed)
        if gated is not None:
            return gated
        if await self.audit_log.has_recent(target, self._grace_cutoff()):
            logger.debug(f"{target} modified within grace period — keep")
            return DecisionStatus.KEEP
        return classify(budget, roas)

    async def evaluate_many(self, entities: Iterable[BudgetEntity]) -> dict[TargetRef, DecisionStatus]:
        """Evaluate a batch, loading the latest modification per target in one query."""
        entities = list(entities)
        latest = await self.audit_log.latest_for_many(e.target for e in entities)
        cutoff = self._grace_cutoff()

        decisions: dict[TargetRef, DecisionStatus] = {}
        for entity in entities:
            gated = self._gate(entity.budget, entity.parent_managed)
            if gated is not None:
                decisions[entity.target] = gated
                continue
            modified_at = latest.get(entity.target)
            if modified_at is not None and to_naive_utc(modified_at) >= cutoff:
                decisions[entity.target] = DecisionStatus.KEEP
                continue
            decisions[entity.target] = classify(entity.budget, entity.metrics.roas)
        return decisions
