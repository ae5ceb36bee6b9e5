from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tenantgrid.core.errors import InvalidRequest
from tenantgrid.services.ledger import credit_pools, debit_pools, period_start, sum_pools


def _pool(pool_id: str, amount: str, *, expires_at: str | None = None, source_type: str = "purchase") -> dict:
    return {
        "pool_id": pool_id,
        "amount": amount,
        "source_type": source_type,
        "expires_at": expires_at,
        "created_at": "2026-01-01T00:00:00+00:00",
    }


def test_debit_spends_soonest_expiring_pool_first() -> None:
    pools = [
        _pool("late", "10", expires_at="2026-12-01T00:00:00+00:00"),
        _pool("undated", "10"),
        _pool("soon", "5", expires_at="2026-03-01T00:00:00+00:00"),
    ]
    kept, slices, overage = debit_pools(pools, Decimal("8"))
    assert overage == Decimal("0")
    assert [piece.amount for piece in slices] == [Decimal("5"), Decimal("3")]
    remaining = {pool["pool_id"]: Decimal(pool["amount"]) for pool in kept}
    assert remaining == {"late": Decimal("7"), "undated": Decimal("10")}
    assert sum_pools(kept) == Decimal("17")


def test_debit_without_overage_refuses_to_overdraw() -> None:
    with pytest.raises(ValueError):
        debit_pools([_pool("a", "2")], Decimal("3"))


def test_overage_accumulates_in_single_negative_pool() -> None:
    kept, _slices, overage = debit_pools([_pool("a", "2")], Decimal("5"), allow_overage=True)
    assert overage == Decimal("3")
    assert [(pool["source_type"], Decimal(pool["amount"])) for pool in kept] == [("overage", Decimal("-3"))]

    again, _slices, more = debit_pools(kept, Decimal("1"), allow_overage=True)
    assert more == Decimal("1")
    assert len(again) == 1
    assert sum_pools(again) == Decimal("-4")


def test_credit_pays_overage_before_new_pool() -> None:
    pools = [_pool("debt", "-4", source_type="overage")]
    partial = credit_pools(pools, Decimal("3"), source_type="purchase")
    assert sum_pools(partial) == Decimal("-1")
    assert len(partial) == 1

    settled = credit_pools(partial, Decimal("6"), source_type="purchase")
    assert sum_pools(settled) == Decimal("5")
    assert [pool["source_type"] for pool in settled] == ["purchase"]


def test_period_start_truncates_in_utc() -> None:
    now = datetime(2026, 5, 17, 23, 30, tzinfo=timezone.utc)
    assert period_start("day", now) == datetime(2026, 5, 17, tzinfo=timezone.utc)
    assert period_start("month", now) == datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert period_start("year", now) == datetime(2026, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(InvalidRequest):
        period_start("week", now)
