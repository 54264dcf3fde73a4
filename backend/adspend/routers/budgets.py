"""
Budgets Router — Decision statuses, bulk budget actions, audit history and
saved rule profiles.

Entities (ad sets or campaigns with their current metrics) are supplied by
the caller; the platform is only contacted when a bulk action is executed.
"""

import uuid
from typing import Callable, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from adspend.auth import get_current_user_id
from adspend.config import get_settings
from adspend.crypto import CredentialError, TokenCipher
from adspend.database import async_session
from adspend.graph_client import MetaGraphClient, create_graph_client
from adspend.models import Integration
from adspend.schemas import BudgetEntity, MetricsSnapshot, TargetKind, TargetRef
from adspend.services.audit_log import AuditLogWriter, variation
from adspend.services.bulk_action_service import BulkActionExecutor
from adspend.services.decision_service import DecisionEvaluator, decision_weight
from adspend.services.profile_service import (
    ProfileExistsError, ProfileFormatError, ProfileService,
)
from adspend.services.rule_engine import CompoundRule
from adspend.utils import parse_uuid

router = APIRouter()


# ── Dependencies ──────────────────────────────────────────────────────

def get_session_factory() -> async_sessionmaker:
    return async_session


def get_client_factory() -> Callable[[str], MetaGraphClient]:
    settings = get_settings()
    return lambda token: create_graph_client(token, settings)


# ── Request Models ────────────────────────────────────────────────────

class EntitiesRequest(BaseModel):
    entities: list[BudgetEntity]


class RuleRequest(BaseModel):
    entities: list[BudgetEntity]
    rule: Optional[CompoundRule] = None
    profile_id: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _rule_or_profile(self) -> "RuleRequest":
        if self.rule is None and not self.profile_id:
            raise ValueError("Provide either rule or profile_id")
        return self


class BulkRequest(RuleRequest):
    integration_id: str


class ProfileRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    rule: CompoundRule


# ── Helpers ───────────────────────────────────────────────────────────

async def _resolve_rule(
    payload: RuleRequest, user_id: uuid.UUID, session_factory: async_sessionmaker
) -> tuple[CompoundRule, Optional[str]]:
    """The inline rule, or the saved profile's rule (its description is the default reason)."""
    if payload.rule is not None:
        return payload.rule, payload.reason
    profile = await _load_profile(ProfileService(session_factory), user_id, payload.profile_id)
    return profile.rule, payload.reason or profile.description


async def _load_profile(service: ProfileService, user_id: uuid.UUID, profile_id: str):
    try:
        profile = await service.load(user_id, parse_uuid(profile_id, "profile_id"))
    except ProfileFormatError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


async def _access_token(session_factory: async_sessionmaker, integration_id: str, user_id: uuid.UUID) -> str:
    async with session_factory() as db:
        result = await db.execute(
            select(Integration).where(
                Integration.id == parse_uuid(integration_id, "integration_id"),
                Integration.user_id == user_id,
            )
        )
        integration = result.scalar_one_or_none()
    if not integration or not integration.is_active:
        raise HTTPException(status_code=404, detail="Integration not found")
    try:
        return TokenCipher.from_settings(get_settings()).decrypt(integration.access_token_encrypted)
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ── Decisions ─────────────────────────────────────────────────────────

@router.post("/decisions")
async def evaluate_decisions(
    payload: EntitiesRequest,
    _: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Decision status per entity, most urgent first."""
    settings = get_settings()
    evaluator = DecisionEvaluator(
        AuditLogWriter(session_factory), grace_minutes=settings.grace_period_minutes
    )
    decisions = await evaluator.evaluate_many(payload.entities)
    items = [
        {
            "kind": e.target.kind.value,
            "id": e.target.id,
            "name": e.name,
            "status": decisions[e.target].value,
            "weight": decision_weight(decisions[e.target]),
        }
        for e in payload.entities
    ]
    items.sort(key=lambda d: d["weight"], reverse=True)
    return {"decisions": items}


# ── Bulk actions ──────────────────────────────────────────────────────

@router.post("/preview")
async def preview_bulk_action(
    payload: RuleRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """The budgets a bulk action would set, without touching the platform."""
    rule, _ = await _resolve_rule(payload, user_id, session_factory)
    executor = BulkActionExecutor(client=None, audit_log=AuditLogWriter(session_factory))
    changes = executor.plan(payload.entities, rule)
    return {
        "changes": [
            {
                "kind": c.entity.target.kind.value,
                "id": c.entity.target.id,
                "name": c.entity.name,
                "old_budget": c.old_budget,
                "new_budget": c.new_budget,
            }
            for c in changes
        ],
        "total": len(changes),
    }


@router.post("/bulk")
async def execute_bulk_action(
    payload: BulkRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client_factory: Callable[[str], MetaGraphClient] = Depends(get_client_factory),
):
    """Apply a rule to the given entities and push changed budgets to the platform."""
    rule, reason = await _resolve_rule(payload, user_id, session_factory)
    token = await _access_token(session_factory, payload.integration_id, user_id)
    executor = BulkActionExecutor(
        client=client_factory(token),
        audit_log=AuditLogWriter(session_factory),
    )
    result = await executor.execute(payload.entities, rule, reason=reason, actor=str(user_id))
    return result.model_dump()


# ── Audit history ─────────────────────────────────────────────────────

def _current_metrics(
    budget: Optional[float], roas: Optional[float], spend: Optional[float],
    sales: Optional[float], profit: Optional[float],
) -> Optional[MetricsSnapshot]:
    if budget is None:
        return None
    return MetricsSnapshot(budget=budget, roas=roas or 0.0, spend=spend, sales=sales, profit=profit)


async def _history_response(
    target: TargetRef, session_factory: async_sessionmaker, current: Optional[MetricsSnapshot]
) -> dict:
    entries = await AuditLogWriter(session_factory).history(target)
    return {
        "target": {"kind": target.kind.value, "id": target.id, "legacy_key": target.to_legacy_key()},
        "modifications": [
            {
                **e.model_dump(mode="json", exclude={"target"}),
                "variation": variation(current, e) if current else None,
            }
            for e in entries
        ],
    }


@router.get("/modifications/legacy/{key}")
async def modification_history_by_legacy_key(
    key: str,
    _: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """History addressed by the old single-column key (campaign_<id> or a bare ad set id)."""
    return await _history_response(TargetRef.from_legacy_key(key), session_factory, None)


@router.get("/modifications/{kind}/{target_id}")
async def modification_history(
    kind: TargetKind,
    target_id: str,
    budget: Optional[float] = Query(None),
    roas: Optional[float] = Query(None),
    spend: Optional[float] = Query(None),
    sales: Optional[float] = Query(None),
    profit: Optional[float] = Query(None),
    _: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Budget modifications of one target, newest first. Pass the current
    metrics (at least budget) to get the change since each modification.
    """
    target = TargetRef(kind=kind, id=target_id)
    current = _current_metrics(budget, roas, spend, sales, profit)
    return await _history_response(target, session_factory, current)


# ── Profiles ──────────────────────────────────────────────────────────

def _profile_out(profile) -> dict:
    return {
        "id": str(profile.id),
        "name": profile.name,
        "description": profile.description,
        "rule": profile.rule.model_dump(mode="json"),
    }


@router.get("/profiles")
async def list_profiles(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    profiles = await ProfileService(session_factory).list(user_id)
    return {"profiles": [_profile_out(p) for p in profiles]}


@router.post("/profiles", status_code=201)
async def create_profile(
    payload: ProfileRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        profile = await ProfileService(session_factory).save(
            user_id, payload.name, payload.rule, description=payload.description
        )
    except ProfileExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _profile_out(profile)


@router.get("/profiles/{profile_id}")
async def get_profile(
    profile_id: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    profile = await _load_profile(ProfileService(session_factory), user_id, profile_id)
    return _profile_out(profile)


@router.put("/profiles/{profile_id}")
async def update_profile(
    profile_id: str,
    payload: ProfileRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    try:
        profile = await ProfileService(session_factory).save(
            user_id,
            payload.name,
            payload.rule,
            description=payload.description,
            profile_id=parse_uuid(profile_id, "profile_id"),
        )
    except LookupError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except ProfileExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _profile_out(profile)


@router.delete("/profiles/{profile_id}")
async def delete_profile(
    profile_id: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    deleted = await ProfileService(session_factory).delete(user_id, parse_uuid(profile_id, "profile_id"))
    if not deleted:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"deleted": True}
