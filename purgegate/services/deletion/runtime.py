from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.config import get_settings
from purgegate.persistence.db import SessionLocal
from purgegate.services.deletion.cleanup import CleanupOrchestrator, DefaultCleanupOrchestrator
from purgegate.services.deletion.dispatch import (
    ArqPhaseDispatcher,
    InlinePhaseDispatcher,
    PhaseDispatcher,
)
from purgegate.services.deletion.locks import AccountLockManager, get_lock_manager
from purgegate.services.deletion.permissions import PermissionChecker
from purgegate.services.deletion.phases import PhaseRunner
from purgegate.services.deletion.reauth import CredentialStore, DatabaseCredentialStore, ReAuthVerifier
from purgegate.services.deletion.snapshot import SnapshotCoordinator, ZipSnapshotCoordinator
from purgegate.services.deletion.state_machine import DeletionJobStateMachine
from purgegate.services.resilience import RetryPolicy


logger = logging.getLogger(__name__)


@dataclass
class DeletionRuntime:
    # Everything a process needs to drive deletion jobs, wired once.
    state_machine: DeletionJobStateMachine
    phase_runner: PhaseRunner
    dispatcher: PhaseDispatcher
    permissions: PermissionChecker


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    snapshot_coordinator: SnapshotCoordinator | None = None,
    orchestrator: CleanupOrchestrator | None = None,
    credential_store: CredentialStore | None = None,
    permission_checker: PermissionChecker | None = None,
    dispatcher: PhaseDispatcher | None = None,
    lock_manager: AccountLockManager | None = None,
    retry_policy: RetryPolicy | None = None,
) -> DeletionRuntime:
    factory = session_factory or SessionLocal
    if dispatcher is None:
        mode = get_settings().deletion_execution_mode.lower()
        dispatcher = InlinePhaseDispatcher() if mode == "inline" else ArqPhaseDispatcher()
    runner = PhaseRunner(
        factory,
        orchestrator or DefaultCleanupOrchestrator(factory),
        dispatcher,
        policy=retry_policy,
    )
    # Inline dispatchers call straight back into this process's runner.
    if isinstance(dispatcher, InlinePhaseDispatcher):
        dispatcher.bind(runner.run)
    permissions = permission_checker or PermissionChecker(factory)
    state_machine = DeletionJobStateMachine(
        factory,
        snapshot_coordinator=snapshot_coordinator or ZipSnapshotCoordinator(factory),
        reauth_verifier=ReAuthVerifier(credential_store or DatabaseCredentialStore(factory)),
        permission_checker=permissions,
        dispatcher=dispatcher,
        lock_manager=lock_manager or get_lock_manager(),
    )
    return DeletionRuntime(
        state_machine=state_machine,
        phase_runner=runner,
        dispatcher=dispatcher,
        permissions=permissions,
    )


_runtime: DeletionRuntime | None = None


def get_runtime() -> DeletionRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
        logger.info(
            "deletion_runtime_initialized dispatcher=%s",
            type(_runtime.dispatcher).__name__,
        )
    return _runtime


def reset_runtime() -> None:
    # Allow tests to rebuild the runtime after tweaking settings.
    global _runtime
    _runtime = None
