"""social sync schema: tenants, accounts, daily metrics, posts, sync logs

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "social_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("external_account_id", sa.String(), nullable=False),
        sa.Column("account_name", sa.String(), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.String(), nullable=True),
        sa.Column("auth_status", sa.String(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "platform", "external_account_id", name="uq_social_accounts_external"),
    )
    op.create_index("ix_social_accounts_tenant_id", "social_accounts", ["tenant_id"], unique=False)

    op.create_table(
        "social_daily_metrics",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("social_account_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("followers", sa.Integer(), nullable=True),
        sa.Column("impressions", sa.Integer(), nullable=True),
        sa.Column("reach", sa.Integer(), nullable=True),
        sa.Column("engagements", sa.Integer(), nullable=True),
        sa.Column("likes", sa.Integer(), nullable=True),
        sa.Column("comments", sa.Integer(), nullable=True),
        sa.Column("shares", sa.Integer(), nullable=True),
        sa.Column("saves", sa.Integer(), nullable=True),
        sa.Column("views", sa.Integer(), nullable=True),
        sa.Column("watch_time", sa.Float(), nullable=True),
        sa.Column("posts_count", sa.Integer(), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ),
        sa.ForeignKeyConstraint(["social_account_id"], ["social_accounts.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "date", name="uq_social_daily_metrics_day"
        ),
    )
    op.create_index("ix_social_daily_metrics_tenant_id", "social_daily_metrics", ["tenant_id"], unique=False)
    op.create_index(
        "ix_social_daily_metrics_social_account_id",
        "social_daily_metrics",
        ["social_account_id"],
        unique=False,
    )

    op.create_table(
        "social_posts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("social_account_id", sa.String(), nullable=False),
        sa.Column("external_post_id", sa.String(), nullable=False),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("media_type", sa.String(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("metrics_json", sa.JSON(), nullable=False),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ),
        sa.ForeignKeyConstraint(["social_account_id"], ["social_accounts.id"], ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "platform", "external_post_id", name="uq_social_posts_external"),
    )
    op.create_index("ix_social_posts_tenant_id", "social_posts", ["tenant_id"], unique=False)
    op.create_index("ix_social_posts_social_account_id", "social_posts", ["social_account_id"], unique=False)

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("social_account_id", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("rows_upserted", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ),
        sa.ForeignKeyConstraint(["social_account_id"], ["social_accounts.id"], ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_logs_tenant_id", "sync_logs", ["tenant_id"], unique=False)
    op.create_index("ix_sync_logs_social_account_id", "sync_logs", ["social_account_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sync_logs_social_account_id", table_name="sync_logs")
    op.drop_index("ix_sync_logs_tenant_id", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_social_posts_social_account_id", table_name="social_posts")
    op.drop_index("ix_social_posts_tenant_id", table_name="social_posts")
    op.drop_table("social_posts")
    op.drop_index("ix_social_daily_metrics_social_account_id", table_name="social_daily_metrics")
    op.drop_index("ix_social_daily_metrics_tenant_id", table_name="social_daily_metrics")
    op.drop_table("social_daily_metrics")
    op.drop_index("ix_social_accounts_tenant_id", table_name="social_accounts")
    op.drop_table("social_accounts")
    op.drop_table("tenants")
