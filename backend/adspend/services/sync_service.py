"""
Reconciliation Pipeline — Pull daily spend and per-ad performance from the
ads platform and write it to storage under historical protection.

Historical protection:
  - the current day (in the owning user's time zone) is upserted, because
    the platform keeps revising today's numbers until midnight;
  - any earlier day is write-once: an existing row is left untouched and
    counted as skipped, an absent row is inserted.

Failures are isolated: a failed fetch skips only that account, a failed
write skips only that row. Both are counted in ``errors`` and the run
carries on.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Callable, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from adspend.clock import Clock, system_clock, resolve_timezone, local_today
from adspend.config import Settings, get_settings
from adspend.crypto import CredentialError, TokenCipher
from adspend.graph_client import GraphAPIError, MetaGraphClient, create_graph_client
from adspend.models import SyncKind, SyncStatus
from adspend.schemas import SyncCounters
from adspend.services.spend_store import SpendStore, SyncTarget, ProductLink
from adspend.utils import safe_float, safe_int, utcnow

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], MetaGraphClient]


def _action_value(entries, action_type: str = "purchase") -> Optional[str]:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("action_type") == action_type:
            return entry.get("value")
    return None


def _major_units(value) -> float:
    """Platform budgets are strings in minor units ("2500" → 25.0)."""
    return safe_float(value) / 100


def build_performance_record(
    row: dict,
    budgets: dict[str, dict],
    link: ProductLink,
    date: str,
    currency: str,
) -> dict:
    """Turn one ad-level insight row into an AdPerformanceDaily record for one product link."""
    spend = safe_float(row.get("spend"))
    impressions = safe_int(row.get("impressions"))
    clicks = safe_int(row.get("clicks"))

    campaign = budgets.get(row.get("campaign_id") or "", {})
    adset = budgets.get(row.get("adset_id") or "", {})
    campaign_daily = _major_units(campaign.get("daily_budget"))
    campaign_lifetime = _major_units(campaign.get("lifetime_budget"))
    campaign_has_budget = bool(campaign_daily or campaign_lifetime)

    return {
        "product_id": link.product_id,
        "product_ad_account_id": link.link_id,
        "date": date,
        "campaign_id": row.get("campaign_id"),
        "campaign_name": row.get("campaign_name") or "Unknown Campaign",
        "adset_id": row.get("adset_id"),
        "adset_name": row.get("adset_name") or "Unknown Ad Set",
        "ad_id": str(row["ad_id"]),
        "ad_name": row.get("ad_name") or "Unknown Ad",
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "reach": safe_int(row.get("reach")),
        "cpm": (spend / impressions) * 1000 if impressions > 0 else 0.0,
        "cpc": spend / clicks if clicks > 0 else 0.0,
        "ctr": (clicks / impressions) * 100 if impressions > 0 else 0.0,
        "purchases": safe_int(_action_value(row.get("actions"))),
        "purchase_value": safe_float(_action_value(row.get("action_values"))),
        "campaign_daily_budget": campaign_daily,
        "campaign_lifetime_budget": campaign_lifetime,
        # With campaign budget optimization the ad-set budget is not authoritative
        "adset_daily_budget": 0.0 if campaign_has_budget else _major_units(adset.get("daily_budget")),
        "adset_lifetime_budget": 0.0 if campaign_has_budget else _major_units(adset.get("lifetime_budget")),
        "campaign_has_budget": campaign_has_budget,
        "campaign_status": campaign.get("status"),
        "adset_status": adset.get("status"),
        "ad_status": row.get("ad_status"),
        "currency": currency,
        "synced_at": utcnow(),
    }


class ReconciliationPipeline:
    """
    One pipeline per run. Everything it touches is passed in, so tests can
    swap the store, the platform client and the clock.
    """

    def __init__(
        self,
        store: SpendStore,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        cipher: Optional[TokenCipher] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (
            lambda token: create_graph_client(token, self.settings)
        )
        self.cipher = cipher or TokenCipher.from_settings(self.settings)
        self.clock = clock

    # ── Historical protection ─────────────────────────────────────────

    def today_for(self, target: SyncTarget) -> str:
        tz = resolve_timezone(target.timezone, fallback=self.settings.default_timezone)
        return local_today(self.clock, tz).isoformat()

    async def _write(self, record: dict, is_current_day: bool, kind: str, counters: SyncCounters) -> None:
        """Write one record under historical protection. Never raises."""
        if kind == SyncKind.SPEND.value:
            upsert, exists, insert = self.store.upsert_spend, self.store.spend_exists, self.store.insert_spend
            label = f"spend product={record['product_id']} date={record['date']}"
        else:
            upsert, exists, insert = (
                self.store.upsert_performance, self.store.performance_exists, self.store.insert_performance
            )
            label = f"ad {record['ad_id']} link={record['product_ad_account_id']} date={record['date']}"

        try:
            if is_current_day:
                await upsert(record)
                counters.synced += 1
                return
            if await exists(record):
                logger.debug(f"Historical {label} already stored — skipping")
                counters.skipped += 1
                return
            if await insert(record):
                counters.synced += 1
            else:
                # Another run inserted the row between our check and insert
                logger.info(f"Historical {label} written concurrently — skipping")
                counters.skipped += 1
        except Exception as e:
            logger.error(f"Failed to write {label}: {e}")
            counters.errors += 1

    # ── Per-account sync ──────────────────────────────────────────────

    async def _fetch_budgets(self, client: MetaGraphClient, rows: list[dict]) -> dict[str, dict]:
        ids = [r.get("campaign_id") for r in rows] + [r.get("adset_id") for r in rows]
        try:
            return await client.get_budget_objects([i for i in ids if i])
        except GraphAPIError as e:
            # Budgets are informational here; the rows themselves are still valid
            logger.warning(f"Budget lookup failed, storing zero budgets: {e}")
            return {}

    async def sync_account(
        self,
        target: SyncTarget,
        client: MetaGraphClient,
        target_date: Optional[str] = None,
        spend_only: bool = False,
    ) -> SyncCounters:
        """
        Sync one ad account for one date and fan the records out to every
        product linked to it. ``target_date`` defaults to the owner's today.
        """
        counters = SyncCounters()
        today = self.today_for(target)
        date = target_date or today
        is_current_day = date == today
        account_id = target.account_id

        logger.info(
            f"Syncing account {account_id} for {date} "
            f"({'current day' if is_current_day else 'historical'}, {len(target.links)} product link(s))"
        )

        try:
            spend = await client.get_account_spend(account_id, date)
            rows = [] if spend_only else await client.get_ad_insights(account_id, date)
        except GraphAPIError as e:
            logger.error(f"Fetch failed for account {account_id} ({date}): {e}")
            counters.errors += 1
            return counters

        currency = (
            (spend or {}).get("currency") or target.currency or self.settings.default_currency
        )
        if spend is None:
            logger.info(f"No spend reported for account {account_id} on {date} — storing zero")
            spend = {"spend": 0.0, "currency": currency}

        budgets = await self._fetch_budgets(client, rows) if rows else {}

        for link in target.links:
            spend_record = {
                "product_id": link.product_id,
                "product_ad_account_id": link.link_id,
                "date": date,
                "spend": spend["spend"],
                "currency": currency,
                "captured_at": utcnow(),
            }
            await self._write(spend_record, is_current_day, SyncKind.SPEND.value, counters)

            for row in rows:
                if not row.get("ad_id"):
                    continue
                try:
                    record = build_performance_record(row, budgets, link, date, currency)
                except Exception as e:
                    logger.error(f"Malformed insight row for account {account_id}: {e}")
                    counters.errors += 1
                    continue
                await self._write(record, is_current_day, SyncKind.PERFORMANCE.value, counters)

        counters.processed = 1
        logger.info(
            f"Account {account_id} done: synced={counters.synced} "
            f"skipped={counters.skipped} errors={counters.errors}"
        )
        return counters

    # ── Full runs ─────────────────────────────────────────────────────

    async def run(self, target_date: Optional[str] = None) -> SyncCounters:
        """Spend and per-ad performance for every active, product-linked account."""
        return await self._run(SyncKind.PERFORMANCE.value, target_date, spend_only=False)

    async def run_spend_only(self, target_date: Optional[str] = None) -> SyncCounters:
        """Account-level spend only (the lighter, more frequent schedule)."""
        return await self._run(SyncKind.SPEND.value, target_date, spend_only=True)

    async def _run(self, kind: str, target_date: Optional[str], spend_only: bool) -> SyncCounters:
        run_id = await self.store.start_sync_run(kind, target_date)
        counters = SyncCounters()
        try:
            targets = await self.store.load_sync_targets()
            jobs = self._plan(targets, counters)

            semaphore = asyncio.Semaphore(self.settings.sync_concurrency)

            async def _bounded(target: SyncTarget, client: MetaGraphClient) -> SyncCounters:
                async with semaphore:
                    return await self.sync_account(target, client, target_date, spend_only)

            results = await asyncio.gather(
                *(_bounded(t, c) for t, c in jobs), return_exceptions=True
            )
            for (target, _), result in zip(jobs, results):
                if isinstance(result, BaseException):
                    logger.error(f"Account {target.account_id} sync crashed: {result}", exc_info=result)
                    counters.errors += 1
                else:
                    counters.merge(result)
        except Exception as e:
            logger.exception(f"{kind} sync run failed")
            await self.store.finish_sync_run(run_id, counters, SyncStatus.FAILED.value, str(e))
            raise

        await self.store.finish_sync_run(run_id, counters)
        logger.info(
            f"{kind} sync complete: accounts={counters.processed} synced={counters.synced} "
            f"skipped={counters.skipped} errors={counters.errors}"
        )
        return counters

    def _plan(
        self, targets: list[SyncTarget], counters: SyncCounters
    ) -> list[tuple[SyncTarget, MetaGraphClient]]:
        """One platform client per integration; a bad credential skips all its accounts."""
        by_integration: dict[uuid.UUID, list[SyncTarget]] = defaultdict(list)
        for target in targets:
            by_integration[target.integration_id].append(target)

        jobs = []
        for integration_id, accounts in by_integration.items():
            try:
                token = self.cipher.decrypt(accounts[0].access_token_encrypted)
            except CredentialError as e:
                logger.error(f"Integration {integration_id}: {e} — skipping {len(accounts)} account(s)")
                counters.errors += len(accounts)
                continue
            client = self.client_factory(token)
            jobs.extend((account, client) for account in accounts)
        return jobs


def create_pipeline(
    session_factory: async_sessionmaker,
    settings: Optional[Settings] = None,
    clock: Clock = system_clock,
) -> ReconciliationPipeline:
    """Factory: production wiring of store, cipher and Graph API client."""
    settings = settings or get_settings()
    return ReconciliationPipeline(
        store=SpendStore(session_factory),
        settings=settings,
        cipher=TokenCipher.from_settings(settings),
        clock=clock,
    )
