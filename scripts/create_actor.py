from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from uuid import uuid4

from purgegate.domain.models import (
    CAPABILITY_DELETION_ADMIN,
    CAPABILITY_FORCE_DELETE,
    Account,
    Actor,
    ActorApiKey,
    ActorCapability,
)
from purgegate.persistence.db import SessionLocal
from purgegate.services.auth.api_keys import generate_api_key
from purgegate.services.deletion.reauth import hash_secret


_CAPABILITIES = (CAPABILITY_FORCE_DELETE, CAPABILITY_DELETION_ADMIN)


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental credential misuse.
    parser = argparse.ArgumentParser(description="Create or update an actor, its credential and an API key")
    parser.add_argument("--actor-id", default=None, help="Existing or new actor id")
    parser.add_argument("--email", default=None, help="Optional actor email")
    parser.add_argument("--set-password", action="store_true", help="Prompt for the re-auth credential")
    parser.add_argument("--key-name", default=None, help="Issue an API key with this label")
    parser.add_argument(
        "--grant",
        action="append",
        default=[],
        choices=_CAPABILITIES,
        help="Capability to grant; repeatable",
    )
    parser.add_argument("--scope-account", default=None, help="Limit granted capabilities to one account")
    parser.add_argument("--owns-account", default=None, help="Create an account owned by this actor")
    return parser


async def _provision(args: argparse.Namespace, password: str | None) -> int:
    actor_id = args.actor_id or uuid4().hex
    raw_key: str | None = None
    async with SessionLocal() as session:
        actor = await session.get(Actor, actor_id)
        if actor is None:
            actor = Actor(id=actor_id, email=args.email, is_active=True)
            session.add(actor)
        elif args.email:
            actor.email = args.email
        if password:
            actor.password_hash = hash_secret(password)
        # Flush the actor row before dependent inserts to satisfy FK constraints.
        await session.flush()

        if args.owns_account:
            session.add(Account(id=args.owns_account, owner_actor_id=actor_id, display_name=args.owns_account))
        for capability in args.grant:
            session.add(
                ActorCapability(actor_id=actor_id, capability=capability, account_id=args.scope_account)
            )
        if args.key_name:
            key_id, raw_key, key_prefix, key_hash = generate_api_key()
            session.add(
                ActorApiKey(
                    id=key_id,
                    actor_id=actor_id,
                    key_prefix=key_prefix,
                    key_hash=key_hash,
                    name=args.key_name,
                )
            )
        await session.commit()

    print("Actor provisioned:")
    print(f"  actor_id: {actor_id}")
    if args.owns_account:
        print(f"  account_id: {args.owns_account}")
    if args.grant:
        print(f"  capabilities: {', '.join(args.grant)}")
    if raw_key:
        print("  api_key: ")
        print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    password = getpass.getpass("Credential: ") if args.set_password else None
    try:
        return asyncio.run(_provision(args, password))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_actor failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
