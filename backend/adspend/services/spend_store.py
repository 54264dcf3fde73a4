"""
Spend Store — Storage primitives for the reconciliation pipeline.

The pipeline only needs four things from storage: key-based upsert,
key-based exists-check, key-based insert-if-absent and the list of accounts
to sync. Every write runs in its own short transaction so one failed row
never poisons the rest of an account's batch.

Past-day inserts use INSERT ... ON CONFLICT DO NOTHING against the unique
keys, so two concurrent runs for the same (product, date) can never
overwrite each other — the loser simply inserts nothing.
"""

import logging
import uuid
from typing import Optional
from pydantic import BaseModel
from sqlalchemy import select, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from adspend.models import (
    AdSpend, AdPerformanceDaily, AdAccount, Integration, UserSettings,
    SyncRun, AccountStatus, SyncStatus,
)
from adspend.schemas import SyncCounters
from adspend.utils import utcnow

logger = logging.getLogger(__name__)

SPEND_KEY = ("product_id", "date")
PERFORMANCE_KEY = ("product_ad_account_id", "ad_id", "date")


class ProductLink(BaseModel):
    link_id: uuid.UUID
    product_id: uuid.UUID


class SyncTarget(BaseModel):
    """One active ad account linked to at least one product, ready to sync."""
    integration_id: uuid.UUID
    user_id: uuid.UUID
    access_token_encrypted: str
    account_id: str  # platform id without act_ prefix
    account_name: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None  # owning user's configured zone
    links: list[ProductLink]


def _dialect_insert(session: AsyncSession, model):
    """INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")


class SpendStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    # ── Generic key primitives ────────────────────────────────────────

    async def _upsert(self, model, values: dict, key: tuple[str, ...]) -> None:
        async with self._session_factory() as session, session.begin():
            stmt = _dialect_insert(session, model).values(**values)
            update_cols = {
                col: stmt.excluded[col] for col in values if col not in key and col != "id"
            }
            stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=update_cols)
            await session.execute(stmt)

    async def _insert_if_absent(self, model, values: dict, key: tuple[str, ...]) -> bool:
        """Insert unless a row with the same key exists. Returns True if a row was written."""
        async with self._session_factory() as session, session.begin():
            stmt = (
                _dialect_insert(session, model)
                .values(**values)
                .on_conflict_do_nothing(index_elements=list(key))
                .returning(model.id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def _exists(self, model, key_values: dict) -> bool:
        async with self._session_factory() as session:
            conditions = [getattr(model, col) == value for col, value in key_values.items()]
            result = await session.execute(select(model.id).where(and_(*conditions)).limit(1))
            return result.first() is not None

    # ── Spend records: key (product_id, date) ─────────────────────────

    async def upsert_spend(self, record: dict) -> None:
        await self._upsert(AdSpend, record, SPEND_KEY)

    async def spend_exists(self, record: dict) -> bool:
        return await self._exists(AdSpend, {k: record[k] for k in SPEND_KEY})

    async def insert_spend(self, record: dict) -> bool:
        return await self._insert_if_absent(AdSpend, record, SPEND_KEY)

    async def get_spend(self, product_id: uuid.UUID, date: str) -> Optional[AdSpend]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdSpend).where(AdSpend.product_id == product_id, AdSpend.date == date)
            )
            return result.scalar_one_or_none()

    async def list_spend(self, product_id: uuid.UUID, start_date: str, end_date: str) -> list[AdSpend]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdSpend)
                .where(
                    AdSpend.product_id == product_id,
                    AdSpend.date >= start_date,
                    AdSpend.date <= end_date,
                )
                .order_by(AdSpend.date)
            )
            return list(result.scalars().all())

    # ── Ad performance records: key (link, ad_id, date) ───────────────

    async def upsert_performance(self, record: dict) -> None:
        await self._upsert(AdPerformanceDaily, record, PERFORMANCE_KEY)

    async def performance_exists(self, record: dict) -> bool:
        return await self._exists(AdPerformanceDaily, {k: record[k] for k in PERFORMANCE_KEY})

    async def insert_performance(self, record: dict) -> bool:
        return await self._insert_if_absent(AdPerformanceDaily, record, PERFORMANCE_KEY)

    async def get_performance(
        self, product_ad_account_id: uuid.UUID, ad_id: str, date: str
    ) -> Optional[AdPerformanceDaily]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdPerformanceDaily).where(
                    AdPerformanceDaily.product_ad_account_id == product_ad_account_id,
                    AdPerformanceDaily.ad_id == ad_id,
                    AdPerformanceDaily.date == date,
                )
            )
            return result.scalar_one_or_none()

    # ── Sync targets ──────────────────────────────────────────────────

    async def load_sync_targets(self) -> list[SyncTarget]:
        """
        Active accounts of active integrations that feed at least one product,
        each with its owner's configured time zone.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdAccount)
                .join(Integration, AdAccount.integration_id == Integration.id)
                .where(
                    Integration.is_active.is_(True),
                    AdAccount.status == AccountStatus.ACTIVE.value,
                )
                .options(
                    selectinload(AdAccount.integration),
                    selectinload(AdAccount.product_links),
                )
                .order_by(AdAccount.external_account_id)
            )
            accounts = result.scalars().all()

            user_ids = {a.integration.user_id for a in accounts}
            tz_map: dict = {}
            if user_ids:
                tz_result = await session.execute(
                    select(UserSettings).where(UserSettings.user_id.in_(user_ids))
                )
                tz_map = {s.user_id: s.timezone for s in tz_result.scalars().all()}

        targets = []
        for account in accounts:
            if not account.product_links:
                logger.info(f"Ad account {account.external_account_id} not linked to any product — skipping")
                continue
            targets.append(SyncTarget(
                integration_id=account.integration_id,
                user_id=account.integration.user_id,
                access_token_encrypted=account.integration.access_token_encrypted,
                account_id=account.external_account_id,
                account_name=account.name,
                currency=account.currency,
                timezone=tz_map.get(account.integration.user_id),
                links=[
                    ProductLink(link_id=link.id, product_id=link.product_id)
                    for link in account.product_links
                ],
            ))
        logger.info(f"Loaded {len(targets)} ad accounts to sync")
        return targets

    # ── Sync run bookkeeping ──────────────────────────────────────────

    async def start_sync_run(self, kind: str, target_date: Optional[str]) -> uuid.UUID:
        async with self._session_factory() as session, session.begin():
            run = SyncRun(kind=kind, target_date=target_date, status=SyncStatus.RUNNING.value)
            session.add(run)
            await session.flush()
            return run.id

    async def finish_sync_run(
        self,
        run_id: uuid.UUID,
        counters: SyncCounters,
        status: str = SyncStatus.COMPLETED.value,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session, session.begin():
            run = await session.get(SyncRun, run_id)
            if run is None:
                logger.warning(f"Sync run {run_id} vanished before completion")
                return
            run.status = status
            run.synced = counters.synced
            run.errors = counters.errors
            run.skipped = counters.skipped
            run.processed = counters.processed
            run.error_message = error_message
            run.completed_at = utcnow()

    async def recent_sync_runs(self, limit: int = 20) -> list[SyncRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
            )
            return list(result.scalars().all())
