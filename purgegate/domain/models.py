from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping sqlite test databases usable.
JSONType = JSON().with_variant(JSONB(), "postgresql")

JOB_STATUS_PENDING = "pending"
JOB_STATUS_SNAPSHOT = "snapshot"
JOB_STATUS_SNAPSHOT_READY = "snapshot_ready"
JOB_STATUS_EXTERNAL_CLEANUP = "external_cleanup"
JOB_STATUS_LOCAL_CLEANUP = "local_cleanup"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_JOB_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)
ACTIVE_JOB_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_SNAPSHOT,
    JOB_STATUS_SNAPSHOT_READY,
    JOB_STATUS_EXTERNAL_CLEANUP,
    JOB_STATUS_LOCAL_CLEANUP,
)

PREFERENCE_DOWNLOAD_SNAPSHOT = "download_snapshot"
PREFERENCE_DELETE_ALL = "delete_all"
DATA_HANDLING_PREFERENCES = (PREFERENCE_DOWNLOAD_SNAPSHOT, PREFERENCE_DELETE_ALL)

CAPABILITY_FORCE_DELETE = "account_delete_force"
CAPABILITY_DELETION_ADMIN = "account_deletion_admin"

_ACTIVE_STATUS_PREDICATE = "status NOT IN ('completed', 'failed')"


class Base(DeclarativeBase):
    pass


class Actor(Base):
    __tablename__ = "actors"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Store only a salted PBKDF2 digest; plaintext secrets never reach the database.
    password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    # Disabled actors can still be referenced by audit rows but never re-authenticate.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ActorApiKey(Base):
    __tablename__ = "actor_api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    actor_id: Mapped[str] = mapped_column(String, ForeignKey("actors.id", ondelete="CASCADE"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ActorCapability(Base):
    __tablename__ = "actor_capabilities"
    __table_args__ = (
        UniqueConstraint("actor_id", "capability", "account_id", name="uq_actor_capabilities_scope"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String, ForeignKey("actors.id", ondelete="CASCADE"), index=True)
    capability: Mapped[str] = mapped_column(String)
    # Null scope grants the capability across every account.
    account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_actor_id: Mapped[str] = mapped_column(String, ForeignKey("actors.id"), index=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProtectedAccount(Base):
    __tablename__ = "protected_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, unique=True)
    owner_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    enforced_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ExternalIntegration(Base):
    __tablename__ = "external_integrations"
    __table_args__ = (Index("ix_external_integrations_account_status", "account_id", "status"),)

    # Local record of a live third-party link; required as input to sever the remote side.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    external_ref: Mapped[str] = mapped_column(String)
    revoke_url: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    target_url: Mapped[str] = mapped_column(String)
    event_types_json: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AccountDeletionJob(Base):
    __tablename__ = "account_deletion_jobs"
    __table_args__ = (
        # At most one non-terminal job per account, enforced by the database as a last line.
        Index(
            "uq_account_deletion_jobs_active_account",
            "account_id",
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_PREDICATE),
            sqlite_where=text(_ACTIVE_STATUS_PREDICATE),
        ),
        Index("ix_account_deletion_jobs_status_updated", "status", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    requested_by_actor_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default=JOB_STATUS_PENDING, nullable=False)
    data_handling_preference: Mapped[str] = mapped_column(String, nullable=False)
    snapshot_location: Mapped[str | None] = mapped_column(Text, nullable=True)
    snapshot_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    snapshot_ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    snapshot_downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    snapshot_download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    snapshot_acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_by_actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Per-phase attempt counters and timestamps written by the phase runner.
    external_state_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AccountDeletionLog(Base):
    __tablename__ = "account_deletion_logs"
    __table_args__ = (
        Index("ix_account_deletion_logs_account_created", "account_id", "created_at"),
        Index("ix_account_deletion_logs_job_created", "job_id", "created_at"),
    )

    # Append-only audit trail; rows outlive both the job's account and its actors.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    account_id: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event: Mapped[str] = mapped_column(String)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
