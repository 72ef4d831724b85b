"""account deletion jobs, audit log and supporting account tables

Revision ID: 0001_account_deletion
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_account_deletion"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_STATUS_PREDICATE = "status NOT IN ('completed', 'failed')"


def upgrade() -> None:
    op.create_table(
        "actors",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "actor_api_keys",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["actor_id"], ["actors.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_actor_api_keys_actor_id", "actor_api_keys", ["actor_id"])
    op.create_index("ix_actor_api_keys_key_hash", "actor_api_keys", ["key_hash"], unique=True)

    op.create_table(
        "actor_capabilities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("capability", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["actor_id"], ["actors.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("actor_id", "capability", "account_id", name="uq_actor_capabilities_scope"),
    )
    op.create_index("ix_actor_capabilities_actor_id", "actor_capabilities", ["actor_id"])
    op.create_index("ix_actor_capabilities_account_id", "actor_capabilities", ["account_id"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_actor_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["owner_actor_id"], ["actors.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accounts_owner_actor_id", "accounts", ["owner_actor_id"])

    op.create_table(
        "protected_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("owner_actor_id", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("enforced_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id"),
    )

    # Local records of live third-party links, consumed by the external cleanup phase.
    op.create_table(
        "external_integrations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("external_ref", sa.String(), nullable=False),
        sa.Column("revoke_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_external_integrations_account_id", "external_integrations", ["account_id"])
    op.create_index(
        "ix_external_integrations_account_status",
        "external_integrations",
        ["account_id", "status"],
    )

    op.create_table(
        "webhook_subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("target_url", sa.String(), nullable=False),
        sa.Column("event_types_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_subscriptions_account_id", "webhook_subscriptions", ["account_id"])

    op.create_table(
        "account_deletion_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("requested_by_actor_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("data_handling_preference", sa.String(), nullable=False),
        sa.Column("snapshot_location", sa.Text(), nullable=True),
        sa.Column("snapshot_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("snapshot_ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snapshot_downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snapshot_download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("snapshot_acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_by_actor_id", sa.String(), nullable=True),
        sa.Column(
            "external_state_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "metadata_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_account_deletion_jobs_account_id", "account_deletion_jobs", ["account_id"])
    op.create_index(
        "ix_account_deletion_jobs_requested_by_actor_id",
        "account_deletion_jobs",
        ["requested_by_actor_id"],
    )
    op.create_index(
        "ix_account_deletion_jobs_status_updated",
        "account_deletion_jobs",
        ["status", "updated_at"],
    )
    # One non-terminal job per account, even if the application lock is bypassed.
    op.create_index(
        "uq_account_deletion_jobs_active_account",
        "account_deletion_jobs",
        ["account_id"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_STATUS_PREDICATE),
    )

    op.create_table(
        "account_deletion_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "details_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_account_deletion_logs_account_created",
        "account_deletion_logs",
        ["account_id", "created_at"],
    )
    op.create_index(
        "ix_account_deletion_logs_job_created",
        "account_deletion_logs",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_account_deletion_logs_job_created", table_name="account_deletion_logs")
    op.drop_index("ix_account_deletion_logs_account_created", table_name="account_deletion_logs")
    op.drop_table("account_deletion_logs")
    op.drop_index("uq_account_deletion_jobs_active_account", table_name="account_deletion_jobs")
    op.drop_index("ix_account_deletion_jobs_status_updated", table_name="account_deletion_jobs")
    op.drop_index("ix_account_deletion_jobs_requested_by_actor_id", table_name="account_deletion_jobs")
    op.drop_index("ix_account_deletion_jobs_account_id", table_name="account_deletion_jobs")
    op.drop_table("account_deletion_jobs")
    op.drop_index("ix_webhook_subscriptions_account_id", table_name="webhook_subscriptions")
    op.drop_table("webhook_subscriptions")
    op.drop_index("ix_external_integrations_account_status", table_name="external_integrations")
    op.drop_index("ix_external_integrations_account_id", table_name="external_integrations")
    op.drop_table("external_integrations")
    op.drop_table("protected_accounts")
    op.drop_index("ix_accounts_owner_actor_id", table_name="accounts")
    op.drop_table("accounts")
    op.drop_index("ix_actor_capabilities_account_id", table_name="actor_capabilities")
    op.drop_index("ix_actor_capabilities_actor_id", table_name="actor_capabilities")
    op.drop_table("actor_capabilities")
    op.drop_index("ix_actor_api_keys_key_hash", table_name="actor_api_keys")
    op.drop_index("ix_actor_api_keys_actor_id", table_name="actor_api_keys")
    op.drop_table("actor_api_keys")
    op.drop_table("actors")
