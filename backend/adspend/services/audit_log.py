"""
Audit Log Writer — Append-only trail of budget modifications.

Each entry records the target, the budget before and after, who changed it
and why, and the metrics snapshot captured immediately before the change.
Entries are never updated or deleted here; the decision evaluator reads the
newest entry per target to enforce its grace period.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional
from sqlalchemy import select, func, and_, tuple_
from sqlalchemy.ext.asyncio import async_sessionmaker
from adspend.models import BudgetModification
from adspend.schemas import AuditEntry, MetricsSnapshot, TargetKind, TargetRef
from adspend.utils import to_naive_utc

logger = logging.getLogger(__name__)


def _to_row(entry: AuditEntry) -> BudgetModification:
    snap = entry.snapshot
    return BudgetModification(
        target_kind=entry.target.kind.value,
        target_id=entry.target.id,
        previous_budget=entry.previous_budget,
        new_budget=entry.new_budget,
        reason=entry.reason,
        actor=entry.actor,
        modified_at=to_naive_utc(entry.modified_at),
        budget_at_modification=snap.budget,
        spend_at_modification=snap.spend,
        roas_at_modification=snap.roas,
        sales_at_modification=snap.sales,
        profit_at_modification=snap.profit,
    )


def _from_row(row: BudgetModification) -> AuditEntry:
    return AuditEntry(
        target=TargetRef(kind=TargetKind(row.target_kind), id=row.target_id),
        previous_budget=row.previous_budget,
        new_budget=row.new_budget,
        reason=row.reason,
        actor=row.actor,
        modified_at=row.modified_at,
        snapshot=MetricsSnapshot(
            budget=row.budget_at_modification if row.budget_at_modification is not None else row.previous_budget,
            roas=row.roas_at_modification or 0.0,
            spend=row.spend_at_modification,
            sales=row.sales_at_modification,
            profit=row.profit_at_modification,
        ),
    )


class AuditLogWriter:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def append(self, entry: AuditEntry) -> None:
        await self.append_batch([entry])

    async def append_batch(self, entries: Iterable[AuditEntry]) -> int:
        """Append all entries in a single transaction — all or nothing."""
        rows = [_to_row(e) for e in entries]
        if not rows:
            return 0
        async with self._session_factory() as session, session.begin():
            session.add_all(rows)
        logger.info(f"Audit log: appended {len(rows)} budget modification(s)")
        return len(rows)

    async def history(self, target: TargetRef, limit: Optional[int] = None) -> list[AuditEntry]:
        """All modifications of ``target``, newest first."""
        async with self._session_factory() as session:
            query = (
                select(BudgetModification)
                .where(
                    BudgetModification.target_kind == target.kind.value,
                    BudgetModification.target_id == target.id,
                )
                .order_by(BudgetModification.modified_at.desc())
            )
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return [_from_row(r) for r in result.scalars().all()]

    async def latest_for(self, target: TargetRef) -> Optional[AuditEntry]:
        entries = await self.history(target, limit=1)
        return entries[0] if entries else None

    async def latest_for_many(self, targets: Iterable[TargetRef]) -> dict[TargetRef, datetime]:
        """Most recent modification time per target, in one query."""
        keys = {(t.kind.value, t.id) for t in targets}
        if not keys:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    BudgetModification.target_kind,
                    BudgetModification.target_id,
                    func.max(BudgetModification.modified_at),
                )
                .where(tuple_(BudgetModification.target_kind, BudgetModification.target_id).in_(list(keys)))
                .group_by(BudgetModification.target_kind, BudgetModification.target_id)
            )
            return {
                TargetRef(kind=TargetKind(kind), id=target_id): modified_at
                for kind, target_id, modified_at in result.all()
            }

    async def has_recent(self, target: TargetRef, since: datetime) -> bool:
        """True if ``target`` was modified at or after ``since``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(BudgetModification.id)
                .where(and_(
                    BudgetModification.target_kind == target.kind.value,
                    BudgetModification.target_id == target.id,
                    BudgetModification.modified_at >= to_naive_utc(since),
                ))
                .limit(1)
            )
            return result.first() is not None


def _pct_change(current: Optional[float], previous: Optional[float], absolute: bool = False) -> Optional[float]:
    if current is None or previous is None or previous == 0:
        return None
    base = abs(previous) if absolute else previous
    return round((current - previous) / base * 100, 2)


def variation(current: MetricsSnapshot, entry: AuditEntry) -> dict[str, Optional[float]]:
    """
    Percentage change of each metric since the modification. ``None`` when the
    metric is missing on either side or the previous value was zero.
    Profit uses the absolute previous value so a loss shrinking reads as positive.
    """
    before = entry.snapshot
    return {
        "budget": _pct_change(current.budget, before.budget),
        "spend": _pct_change(current.spend, before.spend),
        "roas": _pct_change(current.roas, before.roas),
        "sales": _pct_change(current.sales, before.sales),
        "profit": _pct_change(current.profit, before.profit, absolute=True),
    }
