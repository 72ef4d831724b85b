from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Protocol

from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.config import get_settings
from purgegate.persistence.repos import accounts as accounts_repo
from purgegate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _password_context(rounds: int) -> CryptContext:
    # pbkdf2_sha256 ships with passlib and needs no native backend.
    return CryptContext(
        schemes=["pbkdf2_sha256"],
        deprecated="auto",
        pbkdf2_sha256__rounds=rounds,
    )


def get_password_context() -> CryptContext:
    return _password_context(get_settings().credential_pbkdf2_iterations)


def hash_secret(secret: str) -> str:
    return get_password_context().hash(secret)


def check_secret(secret: str, encoded: str) -> bool:
    # Malformed or unknown hash formats never verify.
    try:
        return get_password_context().verify(secret, encoded)
    except (ValueError, TypeError):
        return False


class CredentialStore(Protocol):
    async def verify(self, actor_id: str, secret: str) -> bool: ...


class DatabaseCredentialStore:
    """Checks secrets against the passlib hash stored on the actor row.

    Hashing runs in a worker thread so other requests and in-process phase
    tasks keep running while a credential is checked.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def verify(self, actor_id: str, secret: str) -> bool:
        async with self._session_factory() as session:
            actor = await accounts_repo.get_actor(session, actor_id)
        if actor is None or not actor.is_active or not actor.password_hash:
            # Unknown actors still pay for one hash so timing does not reveal existence.
            await asyncio.to_thread(get_password_context().dummy_verify)
            return False
        return await asyncio.to_thread(check_secret, secret, actor.password_hash)


class ReAuthVerifier:
    """Re-verifies the calling actor right before an irreversible step.

    Nothing is issued or extended here; a failed attempt is simply reported
    and the job stays where it was.
    """

    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    async def verify(self, actor_id: str, secret: str | None) -> bool:
        if not actor_id or not secret:
            self._record_failure(actor_id)
            return False
        verified = await self._store.verify(actor_id, secret)
        if not verified:
            self._record_failure(actor_id)
        return verified

    def _record_failure(self, actor_id: str) -> None:
        increment_counter("account_deletion.reauth_failures_total")
        logger.warning("deletion_reauth_failed actor_id=%s", actor_id)
