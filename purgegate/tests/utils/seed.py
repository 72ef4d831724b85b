from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from purgegate.domain.models import (
    Account,
    Actor,
    ActorApiKey,
    ActorCapability,
    ExternalIntegration,
    ProtectedAccount,
    WebhookSubscription,
)
from purgegate.persistence.db import SessionLocal
from purgegate.services.auth.api_keys import generate_api_key
from purgegate.services.deletion.reauth import hash_secret


DEFAULT_SECRET = "correct horse battery staple"


async def create_actor(
    *,
    actor_id: str | None = None,
    secret: str | None = DEFAULT_SECRET,
    is_active: bool = True,
    capabilities: list[tuple[str, str | None]] | None = None,
) -> str:
    # Provision an actor with a stored credential and optional capability grants.
    resolved_id = actor_id or f"actor-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(
            Actor(
                id=resolved_id,
                email=f"{resolved_id}@example.test",
                password_hash=hash_secret(secret) if secret else None,
                is_active=is_active,
            )
        )
        # Flush the actor before capability rows to satisfy FK constraints.
        await session.flush()
        for capability, account_id in capabilities or []:
            session.add(ActorCapability(actor_id=resolved_id, capability=capability, account_id=account_id))
        await session.commit()
    return resolved_id


async def create_account(
    *,
    owner_actor_id: str,
    account_id: str | None = None,
    protected: bool = False,
) -> str:
    resolved_id = account_id or f"acct-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(Account(id=resolved_id, owner_actor_id=owner_actor_id, display_name=resolved_id))
        if protected:
            session.add(
                ProtectedAccount(
                    account_id=resolved_id,
                    owner_actor_id=owner_actor_id,
                    reason="test fixture",
                    enforced_by="test",
                )
            )
        await session.commit()
    return resolved_id


async def add_integration(
    account_id: str,
    *,
    provider: str = "github",
    revoke_url: str | None = "https://integrations.example.test/revoke",
) -> str:
    integration_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            ExternalIntegration(
                id=integration_id,
                account_id=account_id,
                provider=provider,
                external_ref=f"ref-{integration_id[:8]}",
                revoke_url=revoke_url,
                status="active",
            )
        )
        await session.commit()
    return integration_id


async def add_webhook(account_id: str) -> str:
    webhook_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            WebhookSubscription(
                id=webhook_id,
                account_id=account_id,
                target_url="https://hooks.example.test/receive",
                event_types_json=["account.updated"],
            )
        )
        await session.commit()
    return webhook_id


async def create_api_key(
    actor_id: str,
    *,
    revoked_at: datetime | None = None,
    expires_at: datetime | None = None,
) -> tuple[str, dict[str, str]]:
    # Issue a bearer key and return it with ready-to-use headers.
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with SessionLocal() as session:
        session.add(
            ActorApiKey(
                id=key_id,
                actor_id=actor_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name="test-key",
                revoked_at=revoked_at,
                expires_at=expires_at,
            )
        )
        await session.commit()
    return raw_key, {"Authorization": f"Bearer {raw_key}"}
