"""
Cron / Scheduled Jobs — Endpoints for an external scheduler.

These endpoints are called on a schedule. They verify CRON_SECRET and run
the reconciliation pipeline for every active, product-linked ad account.

Set CRON_SECRET in the environment. The scheduler sends either:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>

Rows that fail to sync are counted in the result; they never turn the
response into an error.
"""

import logging
from datetime import date as date_type
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query

from adspend.config import get_settings
from adspend.database import async_session
from adspend.services.spend_store import SpendStore
from adspend.services.sync_service import ReconciliationPipeline, create_pipeline
from adspend.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def _get_cron_secret() -> str:
    return get_settings().cron_secret


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify request came from the scheduler with a valid secret."""
    secret = _get_cron_secret()
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


def get_pipeline() -> ReconciliationPipeline:
    return create_pipeline(async_session)


def _target_date(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return date_type.fromisoformat(value).isoformat()
    except ValueError:
        raise HTTPException(400, f"Invalid date {value!r}, expected YYYY-MM-DD")


@router.post("/sync")
async def cron_sync(
    date: Optional[str] = Query(None, description="YYYY-MM-DD; defaults to each owner's today"),
    _: None = Depends(_require_cron_secret),
    pipeline: ReconciliationPipeline = Depends(get_pipeline),
):
    """
    Scheduled spend + ad performance sync:
    POST /api/cron/sync
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    target_date = _target_date(date)
    try:
        result = await pipeline.run(target_date)
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, "Sync failed. See server logs."))
    logger.info(f"Cron sync completed: {result}")
    return {"status": "ok", "date": target_date, "result": result.model_dump()}


@router.post("/ad-spend")
async def cron_ad_spend(
    date: Optional[str] = Query(None, description="YYYY-MM-DD; defaults to each owner's today"),
    _: None = Depends(_require_cron_secret),
    pipeline: ReconciliationPipeline = Depends(get_pipeline),
):
    """
    Scheduled account-level spend sync:
    POST /api/cron/ad-spend
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    target_date = _target_date(date)
    try:
        result = await pipeline.run_spend_only(target_date)
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e, "Ad spend sync failed. See server logs."))
    logger.info(f"Cron ad spend completed: {result}")
    return {"status": "ok", "date": target_date, "result": result.model_dump()}


@router.get("/runs")
async def recent_runs(
    limit: int = Query(20, ge=1, le=200),
    _: None = Depends(_require_cron_secret),
):
    """Most recent sync runs with their counters."""
    runs = await SpendStore(async_session).recent_sync_runs(limit)
    return {
        "runs": [
            {
                "id": str(r.id),
                "kind": r.kind,
                "target_date": r.target_date,
                "status": r.status,
                "synced": r.synced,
                "errors": r.errors,
                "skipped": r.skipped,
                "processed": r.processed,
                "error_message": r.error_message,
                "started_at": r.started_at.isoformat() if r.started_at else None,
                "completed_at": r.completed_at.isoformat() if r.completed_at else None,
            }
            for r in runs
        ]
    }
