from __future__ import annotations

from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from purgegate.domain.models import (
    Account,
    Actor,
    ActorCapability,
    ExternalIntegration,
    ProtectedAccount,
    WebhookSubscription,
)


# Every column that ties a row to an account; jobs and logs are the audit trail and stay.
ACCOUNT_REFERENCE_COLUMNS: tuple[tuple[str, str, Any], ...] = (
    ("accounts", "id", Account.id),
    ("protected_accounts", "account_id", ProtectedAccount.account_id),
    ("external_integrations", "account_id", ExternalIntegration.account_id),
    ("webhook_subscriptions", "account_id", WebhookSubscription.account_id),
    ("actor_capabilities", "account_id", ActorCapability.account_id),
)


async def get_account(session: AsyncSession, account_id: str) -> Account | None:
    return await session.get(Account, account_id)


async def get_actor(session: AsyncSession, actor_id: str) -> Actor | None:
    return await session.get(Actor, actor_id)


async def has_capability(
    session: AsyncSession,
    *,
    actor_id: str,
    capability: str,
    account_id: str | None = None,
) -> bool:
    # Global grants (null account scope) satisfy every account-scoped check.
    stmt = select(ActorCapability.id).where(
        ActorCapability.actor_id == actor_id,
        ActorCapability.capability == capability,
    )
    if account_id is None:
        stmt = stmt.where(ActorCapability.account_id.is_(None))
    else:
        stmt = stmt.where(
            or_(ActorCapability.account_id.is_(None), ActorCapability.account_id == account_id)
        )
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none() is not None


async def get_protected_record(session: AsyncSession, account_id: str) -> ProtectedAccount | None:
    result = await session.execute(
        select(ProtectedAccount).where(ProtectedAccount.account_id == account_id)
    )
    return result.scalar_one_or_none()


async def ensure_protected_record(
    session: AsyncSession,
    *,
    account_id: str,
    owner_actor_id: str,
    reason: str,
) -> None:
    # Persist config-driven protection so operators see it alongside manual entries.
    if await get_protected_record(session, account_id) is not None:
        return
    session.add(
        ProtectedAccount(
            account_id=account_id,
            owner_actor_id=owner_actor_id,
            reason=reason,
            enforced_by="system",
        )
    )


async def count_account_references(session: AsyncSession, account_id: str) -> list[tuple[str, str, int]]:
    rows: list[tuple[str, str, int]] = []
    for table_name, column_name, column in ACCOUNT_REFERENCE_COLUMNS:
        count = await session.scalar(select(func.count()).select_from(column.class_).where(column == account_id))
        rows.append((table_name, column_name, int(count or 0)))
    return rows


async def list_reference_orphans(
    session: AsyncSession, *, sample_limit: int
) -> list[tuple[str, str, int, list[str]]]:
    # Rows pointing at an account id that no longer has an accounts row.
    rows: list[tuple[str, str, int, list[str]]] = []
    known_accounts = select(Account.id)
    for table_name, column_name, column in ACCOUNT_REFERENCE_COLUMNS:
        if column is Account.id:
            continue
        orphaned = (column.is_not(None), column.not_in(known_accounts))
        count = await session.scalar(select(func.count()).select_from(column.class_).where(*orphaned))
        samples = (
            await session.execute(
                select(column).where(*orphaned).distinct().order_by(column).limit(sample_limit)
            )
        ).scalars().all()
        rows.append((table_name, column_name, int(count or 0), [str(value) for value in samples]))
    return rows
