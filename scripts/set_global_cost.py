from __future__ import annotations

import argparse
import asyncio
from decimal import Decimal, InvalidOperation
import sys

from tenantgrid.persistence.db import SessionLocal
from tenantgrid.services.audit import AuditActor
from tenantgrid.services.credit_config import CreditConfigValues, upsert_global_configuration


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or update the global default cost of an operation")
    parser.add_argument("--operation", required=True, help="Operation code, e.g. crm.leads.create")
    parser.add_argument("--cost", required=True, type=_decimal, help="Credits per unit")
    parser.add_argument("--unit", default="operation", help="Billing unit label")
    parser.add_argument("--free-allowance", type=int, default=0, help="Free units per period")
    parser.add_argument("--free-period", default=None, choices=["day", "month", "year"])
    parser.add_argument("--allow-overage", action="store_true")
    parser.add_argument("--overage-limit", type=_decimal, default=None)
    parser.add_argument("--application", default=None, help="Restrict the default to one application")
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        row = await upsert_global_configuration(
            session,
            operation_code=args.operation,
            values=CreditConfigValues(
                credit_cost=args.cost,
                unit=args.unit,
                free_allowance=args.free_allowance,
                free_allowance_period=args.free_period,
                allow_overage=args.allow_overage,
                overage_limit=args.overage_limit,
                application_code=args.application,
            ),
            actor=AuditActor(actor_id="set_global_cost"),
        )
    print(f"Global cost for {row.operation_code}: {row.credit_cost} per {row.unit}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - report validation and store failures as a non-zero exit
        print(f"set_global_cost failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
