from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgrid.core.logging import configure_logging
from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.credit_expiry import expire_credits


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remove expired credit pools and record expiry transactions")
    parser.add_argument("--tenant", default=None, help="Limit the sweep to one tenant")
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        records = await expire_credits(session, tenant_id=args.tenant)
    for record in records:
        print(f"  {record.entity_type}/{record.entity_id}: {record.amount}")
    print(f"Expired pools on {len(records)} balances")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - report sweep failures as a non-zero exit
        print(f"expire_credits failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
