"""Initial schema: integrations, ad accounts, products, spend, performance,
budget modifications, bulk action profiles and sync runs.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    if "ad_spend" in insp.get_table_names():
        return

    op.create_table(
        "integrations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_integrations_user_id", "integrations", ["user_id"])
    op.create_index("ix_integrations_is_active", "integrations", ["is_active"])

    op.create_table(
        "ad_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("integration_id", sa.Uuid(), nullable=False),
        sa.Column("external_account_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["integration_id"], ["integrations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("integration_id", "external_account_id", name="uq_ad_account_per_integration"),
    )
    op.create_index("ix_ad_accounts_integration_id", "ad_accounts", ["integration_id"])
    op.create_index("ix_ad_accounts_status", "ad_accounts", ["status"])

    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_products_user_id", "products", ["user_id"])

    op.create_table(
        "product_ad_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("ad_account_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["ad_account_id"], ["ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "ad_account_id", name="uq_product_ad_account"),
    )
    op.create_index("ix_paa_ad_account_id", "product_ad_accounts", ["ad_account_id"])

    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "ad_spend",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("product_ad_account_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("spend", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("captured_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_ad_account_id"], ["product_ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "date", name="uq_ad_spend_product_date"),
    )
    op.create_index("ix_ad_spend_date", "ad_spend", ["date"])

    op.create_table(
        "ad_performance_daily",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("product_ad_account_id", sa.Uuid(), nullable=False),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("campaign_id", sa.String(255), nullable=True),
        sa.Column("campaign_name", sa.String(512), nullable=True),
        sa.Column("adset_id", sa.String(255), nullable=True),
        sa.Column("adset_name", sa.String(512), nullable=True),
        sa.Column("ad_id", sa.String(255), nullable=False),
        sa.Column("ad_name", sa.String(512), nullable=True),
        sa.Column("spend", sa.Float(), nullable=True),
        sa.Column("impressions", sa.BigInteger(), nullable=True),
        sa.Column("clicks", sa.Integer(), nullable=True),
        sa.Column("reach", sa.BigInteger(), nullable=True),
        sa.Column("cpc", sa.Float(), nullable=True),
        sa.Column("cpm", sa.Float(), nullable=True),
        sa.Column("ctr", sa.Float(), nullable=True),
        sa.Column("purchases", sa.Integer(), nullable=True),
        sa.Column("purchase_value", sa.Float(), nullable=True),
        sa.Column("campaign_daily_budget", sa.Float(), nullable=True),
        sa.Column("campaign_lifetime_budget", sa.Float(), nullable=True),
        sa.Column("adset_daily_budget", sa.Float(), nullable=True),
        sa.Column("adset_lifetime_budget", sa.Float(), nullable=True),
        sa.Column("campaign_has_budget", sa.Boolean(), nullable=True),
        sa.Column("campaign_status", sa.String(50), nullable=True),
        sa.Column("adset_status", sa.String(50), nullable=True),
        sa.Column("ad_status", sa.String(50), nullable=True),
        sa.Column("currency", sa.String(10), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_ad_account_id"], ["product_ad_accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_ad_account_id", "ad_id", "date", name="uq_ad_perf_link_ad_date"),
    )
    op.create_index("ix_apd_product_date", "ad_performance_daily", ["product_id", "date"])
    op.create_index("ix_apd_adset_id", "ad_performance_daily", ["adset_id"])
    op.create_index("ix_apd_campaign_id", "ad_performance_daily", ["campaign_id"])

    op.create_table(
        "budget_modifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("target_kind", sa.String(20), nullable=False),
        sa.Column("target_id", sa.String(255), nullable=False),
        sa.Column("previous_budget", sa.Float(), nullable=False),
        sa.Column("new_budget", sa.Float(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
        sa.Column("budget_at_modification", sa.Float(), nullable=True),
        sa.Column("spend_at_modification", sa.Float(), nullable=True),
        sa.Column("roas_at_modification", sa.Float(), nullable=True),
        sa.Column("sales_at_modification", sa.Float(), nullable=True),
        sa.Column("profit_at_modification", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_budget_mod_target_time", "budget_modifications", ["target_kind", "target_id", "modified_at"]
    )
    op.create_index("ix_budget_mod_modified_at", "budget_modifications", ["modified_at"])

    op.create_table(
        "bulk_action_profiles",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("document", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "name", name="uq_profile_name_per_user"),
    )
    op.create_index("ix_bulk_action_profiles_user_id", "bulk_action_profiles", ["user_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("target_date", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="running"),
        sa.Column("synced", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("processed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_runs_started_at", "sync_runs", ["started_at"])
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])


def downgrade() -> None:
    for table in (
        "sync_runs",
        "bulk_action_profiles",
        "budget_modifications",
        "ad_performance_daily",
        "ad_spend",
        "user_settings",
        "product_ad_accounts",
        "products",
        "ad_accounts",
        "integrations",
    ):
        op.drop_table(table)
