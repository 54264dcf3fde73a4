"""
Ad Spend Reconciliation — Database Models
Integrations, ad accounts and product links feed the daily spend and ad
performance tables; budget modifications form the append-only audit trail.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from adspend.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class SyncKind(str, enum.Enum):
    PERFORMANCE = "performance"
    SPEND = "spend"


class SyncStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  INTEGRATIONS — Ads platform credentials per user
# ══════════════════════════════════════════════════════════════════════

class Integration(Base):
    """Ads platform credential. The access token is stored Fernet-encrypted."""
    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_accounts: Mapped[list["AdAccount"]] = relationship("AdAccount", back_populates="integration", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_integrations_user_id", "user_id"),
        Index("ix_integrations_is_active", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AD ACCOUNTS — Platform advertising accounts under an integration
# ══════════════════════════════════════════════════════════════════════

class AdAccount(Base):
    __tablename__ = "ad_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False)
    external_account_id: Mapped[str] = mapped_column(String(255), nullable=False)  # without the act_ prefix
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=AccountStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    integration: Mapped["Integration"] = relationship("Integration", back_populates="ad_accounts")
    product_links: Mapped[list["ProductAdAccount"]] = relationship("ProductAdAccount", back_populates="ad_account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("integration_id", "external_account_id", name="uq_ad_account_per_integration"),
        Index("ix_ad_accounts_integration_id", "integration_id"),
        Index("ix_ad_accounts_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  PRODUCTS & LINKS — Spend is always attributed through a link
# ══════════════════════════════════════════════════════════════════════

class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    ad_account_links: Mapped[list["ProductAdAccount"]] = relationship("ProductAdAccount", back_populates="product", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_products_user_id", "user_id"),
    )


class ProductAdAccount(Base):
    """Many-to-many association between products and ad accounts."""
    __tablename__ = "product_ad_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    ad_account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    product: Mapped["Product"] = relationship("Product", back_populates="ad_account_links")
    ad_account: Mapped["AdAccount"] = relationship("AdAccount", back_populates="product_links")

    __table_args__ = (
        UniqueConstraint("product_id", "ad_account_id", name="uq_product_ad_account"),
        Index("ix_paa_ad_account_id", "ad_account_id"),
    )


class UserSettings(Base):
    """Per-user preferences. The time zone decides which date is "today" for syncs."""
    __tablename__ = "user_settings"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=True)  # IANA name, e.g. America/Bogota
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ══════════════════════════════════════════════════════════════════════
#  AD SPEND — One row per product per date
# ══════════════════════════════════════════════════════════════════════

class AdSpend(Base):
    """
    Daily spend per product. Rows for past dates are write-once; only the
    current day (in the owner's time zone) may be overwritten by a sync.
    """
    __tablename__ = "ad_spend"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    product_ad_account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("product_ad_accounts.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("product_id", "date", name="uq_ad_spend_product_date"),
        Index("ix_ad_spend_date", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AD PERFORMANCE DAILY — One row per (product link, ad, date)
# ══════════════════════════════════════════════════════════════════════

class AdPerformanceDaily(Base):
    """Per-ad daily metrics pulled from the platform's insights endpoint."""
    __tablename__ = "ad_performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    product_ad_account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("product_ad_accounts.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)

    campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    adset_id: Mapped[str] = mapped_column(String(255), nullable=True)
    adset_name: Mapped[str] = mapped_column(String(512), nullable=True)
    ad_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_name: Mapped[str] = mapped_column(String(512), nullable=True)

    # Performance metrics
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    reach: Mapped[int] = mapped_column(BigInteger, default=0)
    cpc: Mapped[float] = mapped_column(Float, default=0.0)
    cpm: Mapped[float] = mapped_column(Float, default=0.0)
    ctr: Mapped[float] = mapped_column(Float, default=0.0)
    purchases: Mapped[int] = mapped_column(Integer, default=0)
    purchase_value: Mapped[float] = mapped_column(Float, default=0.0)

    # Budgets (major currency units)
    campaign_daily_budget: Mapped[float] = mapped_column(Float, default=0.0)
    campaign_lifetime_budget: Mapped[float] = mapped_column(Float, default=0.0)
    adset_daily_budget: Mapped[float] = mapped_column(Float, default=0.0)
    adset_lifetime_budget: Mapped[float] = mapped_column(Float, default=0.0)
    campaign_has_budget: Mapped[bool] = mapped_column(Boolean, default=False)  # CBO: ad-set budget not authoritative

    campaign_status: Mapped[str] = mapped_column(String(50), nullable=True)
    adset_status: Mapped[str] = mapped_column(String(50), nullable=True)
    ad_status: Mapped[str] = mapped_column(String(50), nullable=True)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("product_ad_account_id", "ad_id", "date", name="uq_ad_perf_link_ad_date"),
        Index("ix_apd_product_date", "product_id", "date"),
        Index("ix_apd_adset_id", "adset_id"),
        Index("ix_apd_campaign_id", "campaign_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  BUDGET MODIFICATIONS — Append-only audit trail
# ══════════════════════════════════════════════════════════════════════

class BudgetModification(Base):
    """
    One row per accepted budget change, with the metrics snapshot captured
    immediately before the change. Never updated or deleted by the app.
    """
    __tablename__ = "budget_modifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    target_kind: Mapped[str] = mapped_column(String(20), nullable=False)  # campaign | adset
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    previous_budget: Mapped[float] = mapped_column(Float, nullable=False)
    new_budget: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=True)
    modified_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    # Snapshot at modification time
    budget_at_modification: Mapped[float] = mapped_column(Float, nullable=True)
    spend_at_modification: Mapped[float] = mapped_column(Float, nullable=True)
    roas_at_modification: Mapped[float] = mapped_column(Float, nullable=True)
    sales_at_modification: Mapped[float] = mapped_column(Float, nullable=True)
    profit_at_modification: Mapped[float] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("ix_budget_mod_target_time", "target_kind", "target_id", "modified_at"),
        Index("ix_budget_mod_modified_at", "modified_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  BULK ACTION PROFILES — Saved compound rules
# ══════════════════════════════════════════════════════════════════════

class BulkActionProfile(Base):
    """Named, versioned compound rule a user can reload for bulk actions."""
    __tablename__ = "bulk_action_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)  # {"version": 1, "rule": {...}}
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_profile_name_per_user"),
        Index("ix_bulk_action_profiles_user_id", "user_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC RUNS — Outcome of each reconciliation invocation
# ══════════════════════════════════════════════════════════════════════

class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # performance | spend
    target_date: Mapped[str] = mapped_column(String(10), nullable=True)  # None = each owner's today
    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.RUNNING.value)
    synced: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sync_runs_started_at", "started_at"),
        Index("ix_sync_runs_status", "status"),
    )
