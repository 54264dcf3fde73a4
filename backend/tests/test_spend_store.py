"""
Tests for the spend store's key primitives and sync target loading.
"""

import uuid
from datetime import datetime
from unittest.mock import patch
import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update

from adspend.main import app
from adspend.models import AdAccount, Integration
from adspend.routers.budgets import get_session_factory
from adspend.services.spend_store import SpendStore


def _spend(link, date, spend):
    return {
        "product_id": link.product_id,
        "product_ad_account_id": link.id,
        "date": date,
        "spend": spend,
        "currency": "USD",
    }


@pytest.mark.anyio
async def test_upsert_overwrites_and_insert_does_not(session_factory, seed):
    seeded = await seed()
    link = seeded["links"]["111"][0]
    store = SpendStore(session_factory)

    assert await store.insert_spend(_spend(link, "2026-10-01", 5.0)) is True
    assert await store.insert_spend(_spend(link, "2026-10-01", 9.0)) is False
    assert (await store.get_spend(link.product_id, "2026-10-01")).spend == 5.0

    await store.upsert_spend(_spend(link, "2026-10-01", 9.0))
    assert (await store.get_spend(link.product_id, "2026-10-01")).spend == 9.0
    assert await store.spend_exists(_spend(link, "2026-10-01", 0)) is True
    assert await store.spend_exists(_spend(link, "2026-10-02", 0)) is False


@pytest.mark.anyio
async def test_sync_targets_skip_unlinked_disabled_and_inactive(session_factory, seed):
    active = await seed(account_ids=("111",), timezone="Europe/Madrid")
    inactive = await seed(account_ids=("222",))
    user_id = uuid.uuid4()
    async with session_factory() as session, session.begin():
        integration = Integration(id=uuid.uuid4(), user_id=user_id, access_token_encrypted="t", is_active=True)
        session.add(integration)
        # Active account that no product uses
        session.add(AdAccount(integration_id=integration.id, external_account_id="333", status="active"))
    async with session_factory() as session, session.begin():
        row = await session.get(Integration, inactive["integration_id"])
        row.is_active = False

    disabled = await seed(account_ids=("444",))
    async with session_factory() as session, session.begin():
        await session.execute(
            update(AdAccount).where(AdAccount.external_account_id == "444").values(status="disabled")
        )

    targets = await SpendStore(session_factory).load_sync_targets()

    assert [t.account_id for t in targets] == ["111"]
    assert targets[0].timezone == "Europe/Madrid"
    assert targets[0].user_id == active["user_id"]
    assert [link.link_id for link in targets[0].links] == [active["links"]["111"][0].id]
    assert disabled["integration_id"] != targets[0].integration_id


async def _get_spend(session_factory, product_id, user_id, params=None):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.get(
                f"/api/spend/products/{product_id}",
                params=params or {},
                headers={"X-User-Id": str(user_id)},
            )
    finally:
        app.dependency_overrides.pop(get_session_factory, None)


@pytest.mark.anyio
async def test_spend_endpoint_lists_range(session_factory, seed):
    seeded = await seed()
    link = seeded["links"]["111"][0]
    store = SpendStore(session_factory)
    for day, amount in (("2026-10-01", 5.0), ("2026-10-02", 7.5), ("2026-10-05", 1.0)):
        await store.insert_spend(_spend(link, day, amount))

    response = await _get_spend(
        session_factory, link.product_id, seeded["user_id"],
        {"start_date": "2026-10-01", "end_date": "2026-10-03"},
    )

    assert response.status_code == 200
    body = response.json()
    assert [d["date"] for d in body["days"]] == ["2026-10-01", "2026-10-02"]
    assert body["total"] == 12.5


@pytest.mark.anyio
async def test_spend_endpoint_hides_other_users_products(session_factory, seed):
    seeded = await seed()
    link = seeded["links"]["111"][0]
    await SpendStore(session_factory).insert_spend(_spend(link, "2026-10-01", 5.0))

    response = await _get_spend(
        session_factory, link.product_id, uuid.uuid4(),
        {"start_date": "2026-10-01", "end_date": "2026-10-01"},
    )

    assert response.status_code == 404


@pytest.mark.anyio
async def test_spend_endpoint_defaults_to_utc_today(session_factory, seed):
    seeded = await seed()
    link = seeded["links"]["111"][0]

    with patch("adspend.routers.spend.utcnow", return_value=datetime(2026, 10, 19, 23, 30)):
        response = await _get_spend(session_factory, link.product_id, seeded["user_id"])

    assert response.status_code == 200
    body = response.json()
    assert body["end_date"] == "2026-10-19"
    assert body["start_date"] == "2026-09-20"
