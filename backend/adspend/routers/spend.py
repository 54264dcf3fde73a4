"""
Spend Router — Read the reconciled daily spend of a product.
"""

import uuid
from datetime import date, timedelta
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import async_sessionmaker

from adspend.auth import get_current_user_id
from adspend.models import Product
from adspend.routers.budgets import get_session_factory
from adspend.services.spend_store import SpendStore
from adspend.utils import parse_uuid, utcnow

router = APIRouter()


@router.get("/products/{product_id}")
async def product_spend(
    product_id: str,
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to 30 days ago"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today (UTC)"),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Daily spend of one of the caller's products."""
    try:
        end = date.fromisoformat(end_date) if end_date else utcnow().date()
        start = date.fromisoformat(start_date) if start_date else end - timedelta(days=29)
    except ValueError:
        raise HTTPException(status_code=400, detail="Dates must be YYYY-MM-DD")
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    pid = parse_uuid(product_id, "product_id")
    async with session_factory() as db:
        product = await db.get(Product, pid)
    if not product or product.user_id != user_id:
        raise HTTPException(status_code=404, detail="Product not found")

    rows = await SpendStore(session_factory).list_spend(pid, start.isoformat(), end.isoformat())
    return {
        "product_id": product_id,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total": round(sum(r.spend or 0 for r in rows), 2),
        "days": [
            {"date": r.date, "spend": r.spend, "currency": r.currency, "captured_at": r.captured_at.isoformat()}
            for r in rows
        ],
    }
