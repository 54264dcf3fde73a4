"""
Ad Spend Reconciliation — FastAPI Backend
Syncs daily ad spend and per-ad performance from the Meta Graph API and
drives budget decisions and bulk budget actions.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from adspend.config import get_settings
from adspend.database import init_db, check_db_connection
from adspend.auth import require_auth
from adspend.routers import budgets, cron, spend

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Ad Spend Reconciliation...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Ad Spend Reconciliation",
    description="Daily ad spend reconciliation and budget decisions for Meta ad accounts",
    version="1.0.0",
    lifespan=lifespan,
)

CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers ─────────────────────────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(budgets.router, prefix="/api/budgets", tags=["Budgets"], dependencies=_auth)
app.include_router(spend.router, prefix="/api/spend", tags=["Spend"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No auth — uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Ad Spend Reconciliation",
        "database": "connected" if db_ok else "disconnected",
    }
