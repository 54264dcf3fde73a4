"""
Tests for the budget endpoints: decisions, preview, bulk execution, history
and profiles.
"""

import uuid
from datetime import datetime
import pytest
from httpx import AsyncClient, ASGITransport

from adspend.config import get_settings
from adspend.main import app
from adspend.routers.budgets import get_client_factory, get_session_factory
from adspend.schemas import AuditEntry, MetricsSnapshot, TargetRef
from adspend.services.audit_log import AuditLogWriter


class FakeUpdater:
    def __init__(self):
        self.calls = []

    async def update_daily_budget(self, object_id, amount):
        self.calls.append((object_id, amount))
        return {"success": True}


@pytest.fixture
def updater(session_factory):
    get_settings.cache_clear()
    fake = FakeUpdater()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_client_factory] = lambda: (lambda token: fake)
    yield fake
    app.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest.fixture
def user_id():
    return uuid.uuid4()


def _entity(adset_id, budget, roas):
    return {
        "target": {"kind": "adset", "id": adset_id},
        "name": f"Ad set {adset_id}",
        "metrics": {"budget": budget, "roas": roas},
    }


SCALE_RULE = {
    "conditions": [{"metric": "roas", "operator": ">=", "value": 1.5}],
    "logical_operator": "AND",
    "action": {"type": "percentage", "value": 20, "direction": "increase"},
}


async def _call(method, path, user_id, json=None):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.request(method, path, json=json, headers={"X-User-Id": str(user_id)})


@pytest.mark.anyio
async def test_decisions_sorted_by_urgency(updater, user_id):
    payload = {"entities": [_entity("keep", 10.0, 1.5), _entity("decide", 30.0, 0.5), _entity("warn", 8.0, 0.5)]}

    response = await _call("POST", "/api/budgets/decisions", user_id, payload)

    assert response.status_code == 200
    statuses = [(d["id"], d["status"]) for d in response.json()["decisions"]]
    assert statuses == [("decide", "decision-needed"), ("warn", "warning"), ("keep", "keep")]


@pytest.mark.anyio
async def test_missing_user_header_is_unauthorized(updater):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/api/budgets/decisions", json={"entities": []})
    assert response.status_code == 401


@pytest.mark.anyio
async def test_preview_does_not_touch_platform(updater, user_id):
    payload = {"entities": [_entity("A", 10.0, 2.0), _entity("B", 10.0, 1.0)], "rule": SCALE_RULE}

    response = await _call("POST", "/api/budgets/preview", user_id, payload)

    assert response.status_code == 200
    assert response.json()["changes"] == [
        {"kind": "adset", "id": "A", "name": "Ad set A", "old_budget": 10.0, "new_budget": 12.0}
    ]
    assert updater.calls == []


@pytest.mark.anyio
async def test_between_without_upper_bound_is_422(updater, user_id):
    rule = {
        "conditions": [{"metric": "roas", "operator": "between", "value": 1.0}],
        "action": {"type": "fixed", "value": 5},
    }
    response = await _call("POST", "/api/budgets/preview", user_id, {"entities": [], "rule": rule})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_bulk_updates_platform_and_writes_audit(updater, user_id, seed, session_factory):
    seeded = await seed(user_id=user_id)
    payload = {
        "entities": [_entity("A", 10.0, 2.0)],
        "rule": SCALE_RULE,
        "reason": "scale",
        "integration_id": str(seeded["integration_id"]),
    }

    response = await _call("POST", "/api/budgets/bulk", user_id, payload)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] == 1
    assert body["audit_logged"] is True
    assert updater.calls == [("A", 12.0)]
    entry = await AuditLogWriter(session_factory).latest_for(TargetRef.adset("A"))
    assert entry.reason == "[Bulk Action] scale"
    assert entry.actor == str(user_id)

    history = await _call("GET", "/api/budgets/modifications/adset/A?budget=12&roas=2.4", user_id)
    modifications = history.json()["modifications"]
    assert len(modifications) == 1
    assert modifications[0]["variation"]["roas"] == 20.0


@pytest.mark.anyio
async def test_bulk_with_foreign_integration_is_404(updater, user_id, seed):
    seeded = await seed()  # owned by someone else
    payload = {"entities": [_entity("A", 10.0, 2.0)], "rule": SCALE_RULE, "integration_id": str(seeded["integration_id"])}

    response = await _call("POST", "/api/budgets/bulk", user_id, payload)

    assert response.status_code == 404
    assert updater.calls == []


@pytest.mark.anyio
async def test_profile_crud_and_preview_by_profile(updater, user_id):
    created = await _call(
        "POST", "/api/budgets/profiles", user_id,
        {"name": "Scale winners", "description": "weekly", "rule": SCALE_RULE},
    )
    assert created.status_code == 201
    profile_id = created.json()["id"]

    duplicate = await _call("POST", "/api/budgets/profiles", user_id, {"name": "Scale winners", "rule": SCALE_RULE})
    assert duplicate.status_code == 409

    preview = await _call(
        "POST", "/api/budgets/preview", user_id,
        {"entities": [_entity("A", 10.0, 2.0)], "profile_id": profile_id},
    )
    assert preview.json()["total"] == 1

    listed = await _call("GET", "/api/budgets/profiles", user_id)
    assert [p["name"] for p in listed.json()["profiles"]] == ["Scale winners"]

    deleted = await _call("DELETE", f"/api/budgets/profiles/{profile_id}", user_id)
    assert deleted.status_code == 200
    missing = await _call("GET", f"/api/budgets/profiles/{profile_id}", user_id)
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_history_by_legacy_campaign_key(updater, user_id, session_factory):
    await AuditLogWriter(session_factory).append(
        AuditEntry(
            target=TargetRef.campaign("C1"),
            previous_budget=20.0,
            new_budget=25.0,
            reason="[Campaign] manual",
            modified_at=datetime(2026, 10, 1, 12, 0),
            snapshot=MetricsSnapshot(budget=20.0, roas=1.8),
        )
    )

    response = await _call("GET", "/api/budgets/modifications/legacy/campaign_C1", user_id)

    assert response.status_code == 200
    body = response.json()
    assert body["target"] == {"kind": "campaign", "id": "C1", "legacy_key": "campaign_C1"}
    assert [m["new_budget"] for m in body["modifications"]] == [25.0]
