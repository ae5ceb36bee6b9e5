from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from tenantgrid.domain.models import ApiKey, Tenant, TenantUser
from tenantgrid.persistence.db import SessionLocal, transaction
from tenantgrid.services.audit import AuditActor, stage_event
from tenantgrid.services.auth.api_keys import generate_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue an API key, creating the tenant and user when missing")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--tenant-name", default=None, help="Display name when the tenant is created")
    parser.add_argument("--role", required=True, help="Role: reader|editor|admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        async with transaction(session):
            tenant = await session.get(Tenant, args.tenant)
            if tenant is None:
                session.add(Tenant(id=args.tenant, name=args.tenant_name or args.tenant, status="active"))
            user = await session.get(TenantUser, user_id)
            if user is None:
                user = TenantUser(id=user_id, tenant_id=args.tenant, email=args.email, role=role)
                session.add(user)
            elif user.tenant_id != args.tenant:
                raise ValueError("User belongs to a different tenant")
            else:
                user.role = role
                if args.email:
                    user.email = args.email
            # Parent rows must exist before the key row references them.
            await session.flush()
            session.add(
                ApiKey(
                    id=key_id,
                    user_id=user.id,
                    tenant_id=user.tenant_id,
                    key_prefix=key_prefix,
                    key_hash=key_hash,
                    name=args.name,
                )
            )
            stage_event(
                session,
                tenant_id=user.tenant_id,
                actor=AuditActor(actor_id="create_api_key", actor_role=role),
                event_type="auth.api_key.created",
                outcome="success",
                resource_type="api_key",
                resource_id=key_id,
                metadata={"user_id": user.id, "key_prefix": key_prefix, "key_name": args.name},
            )

    print("API key created:")
    print(f"  tenant_id: {args.tenant}")
    print(f"  user_id: {user_id}")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - report provisioning failures as a non-zero exit
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
