from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgrid.core.logging import configure_logging
from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.tenant_cleanup import delete_tenant_data


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Permanently delete every row owned by a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per delete pass")
    parser.add_argument("--max-passes", type=int, default=None, help="Pass limit per table")
    parser.add_argument(
        "--confirm",
        default=None,
        help="Must repeat the tenant identifier; nothing is deleted otherwise",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        report = await delete_tenant_data(
            session,
            args.tenant,
            batch_size=args.batch_size,
            max_passes=args.max_passes,
        )
    for table_name, count in report.deleted.items():
        print(f"  {table_name}: {count}")
    for table_name in report.skipped:
        print(f"  {table_name}: skipped (table missing)")
    print(f"Deleted {report.total_deleted} rows for tenant {report.tenant_id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    if args.confirm != args.tenant:
        print("Refusing to delete: pass --confirm with the tenant identifier", file=sys.stderr)
        return 2
    configure_logging()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - report cleanup failures as a non-zero exit
        print(f"delete_tenant_data failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
