"""
Tests for the reconciliation pipeline: historical protection, failure
isolation, fan-out to linked products and time-zone handling.
"""

from datetime import datetime, timezone
import pytest
from cryptography.fernet import Fernet

from adspend.clock import fixed_clock
from adspend.config import Settings
from adspend.crypto import TokenCipher
from adspend.graph_client import GraphAPIError
from adspend.models import SyncRun
from adspend.services.spend_store import SpendStore, ProductLink
from adspend.services.sync_service import ReconciliationPipeline, build_performance_record
from sqlalchemy import select

TODAY = "2026-10-19"
YESTERDAY = "2026-10-18"
NOW = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)


class FakeGraphClient:
    def __init__(self, spend=None, rows=None, budgets=None, failing=()):
        self.spend = spend or {}
        self.rows = rows or {}
        self.budgets = budgets or {}
        self.failing = set(failing)
        self.spend_calls = []

    async def get_account_spend(self, account_id, date):
        self.spend_calls.append((account_id, date))
        if account_id in self.failing:
            raise GraphAPIError("Service temporarily unavailable", status_code=503)
        return self.spend.get(account_id)

    async def get_ad_insights(self, account_id, date):
        return self.rows.get(account_id, [])

    async def get_budget_objects(self, object_ids):
        return {i: self.budgets[i] for i in object_ids if i in self.budgets}


def _ad_row(ad_id="ad-1", spend="12.50", adset_id="as-1", campaign_id="c-1"):
    return {
        "campaign_id": campaign_id,
        "campaign_name": "Prospecting",
        "adset_id": adset_id,
        "adset_name": "Broad",
        "ad_id": ad_id,
        "ad_name": "Video A",
        "spend": spend,
        "impressions": "1000",
        "clicks": "25",
        "reach": "800",
        "actions": [{"action_type": "link_click", "value": "25"}, {"action_type": "purchase", "value": "3"}],
        "action_values": [{"action_type": "purchase", "value": "120.00"}],
    }


def _pipeline(session_factory, client, store=None, clock=None, cipher=None):
    settings = Settings(sync_concurrency=1)
    return ReconciliationPipeline(
        store=store or SpendStore(session_factory),
        settings=settings,
        client_factory=lambda token: client,
        cipher=cipher or TokenCipher(None),
        clock=clock or fixed_clock(NOW),
    )


@pytest.mark.anyio
async def test_current_day_is_upserted_idempotently(session_factory, seed):
    seeded = await seed(account_ids=("111",))
    product_id = seeded["links"]["111"][0].product_id
    store = SpendStore(session_factory)

    client = FakeGraphClient(spend={"111": {"spend": 10.0, "currency": "USD"}})
    first = await _pipeline(session_factory, client).run(TODAY)
    client.spend["111"] = {"spend": 42.5, "currency": "USD"}
    second = await _pipeline(session_factory, client).run(TODAY)

    assert first.synced == 1
    assert second.synced == 1
    assert second.skipped == 0
    stored = await store.list_spend(product_id, TODAY, TODAY)
    assert len(stored) == 1
    assert stored[0].spend == 42.5


@pytest.mark.anyio
async def test_past_day_is_write_once(session_factory, seed):
    seeded = await seed(account_ids=("111",))
    product_id = seeded["links"]["111"][0].product_id
    store = SpendStore(session_factory)

    client = FakeGraphClient(
        spend={"111": {"spend": 10.0, "currency": "USD"}},
        rows={"111": [_ad_row()]},
    )
    first = await _pipeline(session_factory, client).run(YESTERDAY)
    assert first.synced == 2  # spend record + one ad
    assert first.skipped == 0

    client.spend["111"] = {"spend": 99.0, "currency": "USD"}
    client.rows["111"] = [_ad_row(spend="99.00")]
    second = await _pipeline(session_factory, client).run(YESTERDAY)

    assert second.synced == 0
    assert second.skipped == 2
    assert (await store.get_spend(product_id, YESTERDAY)).spend == 10.0
    link_id = seeded["links"]["111"][0].id
    assert (await store.get_performance(link_id, "ad-1", YESTERDAY)).spend == 12.5


@pytest.mark.anyio
async def test_no_rows_stores_zero_spend_in_account_currency(session_factory, seed):
    seeded = await seed(account_ids=("111",), currency="EUR")
    product_id = seeded["links"]["111"][0].product_id

    result = await _pipeline(session_factory, FakeGraphClient()).run(TODAY)

    assert result.synced == 1
    record = await SpendStore(session_factory).get_spend(product_id, TODAY)
    assert record.spend == 0.0
    assert record.currency == "EUR"


@pytest.mark.anyio
async def test_zero_spend_defaults_to_usd(session_factory, seed):
    seeded = await seed(account_ids=("111",))
    record_product = seeded["links"]["111"][0].product_id

    await _pipeline(session_factory, FakeGraphClient()).run(TODAY)

    record = await SpendStore(session_factory).get_spend(record_product, TODAY)
    assert record.currency == "USD"


@pytest.mark.anyio
async def test_fetch_failure_is_isolated_to_its_account(session_factory, seed):
    seeded = await seed(account_ids=("111", "222", "333"))
    client = FakeGraphClient(
        spend={
            "111": {"spend": 5.0, "currency": "USD"},
            "333": {"spend": 7.0, "currency": "USD"},
        },
        failing={"222"},
    )

    result = await _pipeline(session_factory, client).run(TODAY)

    assert result.errors == 1
    assert result.synced == 2
    assert {a for a, _ in client.spend_calls} == {"111", "222", "333"}
    store = SpendStore(session_factory)
    assert (await store.get_spend(seeded["links"]["111"][0].product_id, TODAY)).spend == 5.0
    assert await store.get_spend(seeded["links"]["222"][0].product_id, TODAY) is None
    assert (await store.get_spend(seeded["links"]["333"][0].product_id, TODAY)).spend == 7.0


@pytest.mark.anyio
async def test_records_fan_out_to_every_linked_product(session_factory, seed):
    seeded = await seed(account_ids=("111",), products_per_account=3)
    client = FakeGraphClient(
        spend={"111": {"spend": 20.0, "currency": "USD"}},
        rows={"111": [_ad_row("ad-1"), _ad_row("ad-2")]},
    )

    result = await _pipeline(session_factory, client).run(TODAY)

    assert result.synced == 3 * (1 + 2)
    store = SpendStore(session_factory)
    for link in seeded["links"]["111"]:
        assert (await store.get_spend(link.product_id, TODAY)).spend == 20.0
        assert await store.get_performance(link.id, "ad-2", TODAY) is not None


@pytest.mark.anyio
async def test_lost_insert_race_is_skipped_not_overwritten(session_factory, seed):
    seeded = await seed(account_ids=("111",))
    link = seeded["links"]["111"][0]

    class StaleExistsStore(SpendStore):
        """Exists-check that misses a row written by a concurrent run."""
        async def spend_exists(self, record):
            return False

    store = StaleExistsStore(session_factory)
    await store.insert_spend({
        "product_id": link.product_id,
        "product_ad_account_id": link.id,
        "date": YESTERDAY,
        "spend": 3.0,
        "currency": "USD",
    })

    client = FakeGraphClient(spend={"111": {"spend": 50.0, "currency": "USD"}})
    result = await _pipeline(session_factory, client, store=store).run(YESTERDAY)

    assert result.skipped == 1
    assert result.synced == 0
    assert (await store.get_spend(link.product_id, YESTERDAY)).spend == 3.0


@pytest.mark.anyio
async def test_row_write_failure_counts_error_and_continues(session_factory, seed):
    seeded = await seed(account_ids=("111",))

    class FlakyStore(SpendStore):
        async def upsert_performance(self, record):
            if record["ad_id"] == "ad-bad":
                raise RuntimeError("constraint violated")
            await super().upsert_performance(record)

    client = FakeGraphClient(
        spend={"111": {"spend": 1.0, "currency": "USD"}},
        rows={"111": [_ad_row("ad-1"), _ad_row("ad-bad"), _ad_row("ad-3")]},
    )
    store = FlakyStore(session_factory)
    result = await _pipeline(session_factory, client, store=store).run(TODAY)

    assert result.errors == 1
    assert result.synced == 3
    link_id = seeded["links"]["111"][0].id
    assert await store.get_performance(link_id, "ad-3", TODAY) is not None


@pytest.mark.anyio
async def test_undecryptable_credential_skips_its_accounts(session_factory, seed):
    await seed(account_ids=("111", "222"), access_token="not-a-fernet-token")
    cipher = TokenCipher(Fernet.generate_key().decode())
    client = FakeGraphClient(spend={"111": {"spend": 1.0, "currency": "USD"}})

    result = await _pipeline(session_factory, client, cipher=cipher).run(TODAY)

    assert result.errors == 2
    assert result.synced == 0
    assert client.spend_calls == []


@pytest.mark.anyio
async def test_owner_timezone_decides_current_day(session_factory, seed):
    # 02:00 UTC on the 20th is still the 19th in Bogota (UTC-5)
    clock = fixed_clock(datetime(2026, 10, 20, 2, 0, tzinfo=timezone.utc))
    seeded = await seed(account_ids=("111",), timezone="America/Bogota")
    product_id = seeded["links"]["111"][0].product_id
    client = FakeGraphClient(spend={"111": {"spend": 1.0, "currency": "USD"}})

    await _pipeline(session_factory, client, clock=clock).run("2026-10-19")
    client.spend["111"] = {"spend": 2.0, "currency": "USD"}
    second = await _pipeline(session_factory, client, clock=clock).run("2026-10-19")

    assert second.synced == 1
    assert (await SpendStore(session_factory).get_spend(product_id, "2026-10-19")).spend == 2.0


@pytest.mark.anyio
async def test_default_date_is_owner_today(session_factory, seed):
    await seed(account_ids=("111",), timezone="Not/AZone")
    client = FakeGraphClient()

    await _pipeline(session_factory, client).run()

    # Unknown zone falls back to UTC
    assert client.spend_calls == [("111", TODAY)]


@pytest.mark.anyio
async def test_spend_only_run_skips_ad_rows_and_counts_accounts(session_factory, seed):
    seeded = await seed(account_ids=("111", "222"))
    client = FakeGraphClient(
        spend={"111": {"spend": 4.0, "currency": "USD"}},
        rows={"111": [_ad_row()]},
    )

    result = await _pipeline(session_factory, client).run_spend_only(TODAY)

    assert result.processed == 2
    assert result.synced == 2
    link_id = seeded["links"]["111"][0].id
    assert await SpendStore(session_factory).get_performance(link_id, "ad-1", TODAY) is None


@pytest.mark.anyio
async def test_sync_run_is_recorded(session_factory, seed):
    await seed(account_ids=("111",))
    client = FakeGraphClient(spend={"111": {"spend": 4.0, "currency": "USD"}})

    await _pipeline(session_factory, client).run(TODAY)

    async with session_factory() as session:
        runs = (await session.execute(select(SyncRun))).scalars().all()
    assert len(runs) == 1
    assert runs[0].status == "completed"
    assert runs[0].synced == 1
    assert runs[0].target_date == TODAY
    assert runs[0].completed_at is not None


def test_performance_record_zeroes_adset_budget_under_campaign_budget():
    link = ProductLink(link_id="00000000-0000-0000-0000-000000000001",
                       product_id="00000000-0000-0000-0000-000000000002")
    budgets = {
        "c-1": {"daily_budget": "5000", "status": "ACTIVE"},
        "as-1": {"daily_budget": "2000", "status": "ACTIVE"},
    }

    record = build_performance_record(_ad_row(), budgets, link, TODAY, "USD")

    assert record["campaign_has_budget"] is True
    assert record["campaign_daily_budget"] == 50.0
    assert record["adset_daily_budget"] == 0.0
    assert record["purchases"] == 3
    assert record["purchase_value"] == 120.0
    assert record["cpm"] == pytest.approx(12.5)
    assert record["cpc"] == pytest.approx(0.5)
    assert record["ctr"] == pytest.approx(2.5)


def test_performance_record_keeps_adset_budget_without_campaign_budget():
    link = ProductLink(link_id="00000000-0000-0000-0000-000000000001",
                       product_id="00000000-0000-0000-0000-000000000002")
    row = _ad_row()
    row["impressions"] = "0"
    row["clicks"] = "0"

    record = build_performance_record(row, {"as-1": {"daily_budget": "2550"}}, link, TODAY, "USD")

    assert record["campaign_has_budget"] is False
    assert record["adset_daily_budget"] == 25.5
    assert record["cpm"] == 0.0
    assert record["ctr"] == 0.0
