from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy import column, delete, exists, select, table
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.config import get_settings
from tenantgrid.persistence.db import transaction
from tenantgrid.persistence.guards import require_tenant_id


logger = logging.getLogger(__name__)

_MISSING_TABLE_MARKERS = ("no such table", "does not exist", "undefinedtable")


@dataclass(frozen=True)
class CleanupStep:
    """One table to empty for a tenant.

    Rows are matched on ``tenant_column`` directly, or through ``via`` as
    ``(fk_column, parent_table)`` when the table only references a tenant-owned
    parent. ``self_parent_column`` restricts each pass to rows nothing else in
    the same table points at, so trees are removed leaves first.
    """

    table: str
    tenant_column: str = "tenant_id"
    key_column: str = "id"
    via: tuple[str, str] | None = None
    self_parent_column: str | None = None


# Dependents before the rows they reference.
DEFAULT_STEPS: tuple[CleanupStep, ...] = (
    CleanupStep("api_keys"),
    CleanupStep("admin_transfer_confirmations"),
    CleanupStep("user_role_assignments"),
    CleanupStep("custom_roles"),
    CleanupStep("organization_memberships"),
    CleanupStep("credit_transactions"),
    CleanupStep("credit_usage_counters"),
    CleanupStep("credits"),
    CleanupStep("credit_configurations"),
    CleanupStep("audit_events"),
    CleanupStep("location_usage", via=("location_id", "locations")),
    CleanupStep("location_resources", via=("location_id", "locations")),
    CleanupStep("location_assignments"),
    CleanupStep("locations"),
    CleanupStep("organizations", self_parent_column="parent_organization_id"),
    CleanupStep("tenant_users"),
    CleanupStep("tenants", tenant_column="id"),
)


@dataclass
class CleanupReport:
    tenant_id: str
    deleted: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())


def is_missing_table_error(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "sqlstate", None) == "42P01" or getattr(orig, "pgcode", None) == "42P01":
        return True
    message = f"{type(orig).__name__ if orig is not None else ''} {exc}".lower()
    return any(marker in message for marker in _MISSING_TABLE_MARKERS)


def build_batch_delete(step: CleanupStep, tenant_id: str, batch_size: int):
    columns = {step.key_column, step.tenant_column}
    if step.via:
        columns.add(step.via[0])
    if step.self_parent_column:
        columns.add(step.self_parent_column)
    target = table(step.table, *(column(name) for name in sorted(columns)))
    batch = target.alias("batch")

    if step.via:
        fk_column, parent_name = step.via
        parent = table(parent_name, column("id"), column("tenant_id"))
        match = batch.c[fk_column].in_(select(parent.c.id).where(parent.c.tenant_id == tenant_id))
    else:
        match = batch.c[step.tenant_column] == tenant_id

    candidates = select(batch.c[step.key_column]).where(match)
    if step.self_parent_column:
        child = target.alias("child")
        candidates = candidates.where(
            ~exists(select(child.c[step.key_column]).where(child.c[step.self_parent_column] == batch.c[step.key_column]))
        )
    return delete(target).where(target.c[step.key_column].in_(candidates.limit(batch_size)))


async def delete_tenant_data(
    session: AsyncSession,
    tenant_id: str,
    *,
    steps: tuple[CleanupStep, ...] = DEFAULT_STEPS,
    batch_size: int | None = None,
    max_passes: int | None = None,
) -> CleanupReport:
    """Remove every row owned by ``tenant_id``, leaves first, in bounded batches.

    Each table is drained until a pass deletes nothing. Every pass commits on
    its own so long cleanups never hold one huge transaction. Tables that do
    not exist in this database are skipped and reported.
    """
    require_tenant_id(tenant_id)
    settings = get_settings()
    resolved_batch = batch_size or settings.tenant_cleanup_batch_size
    resolved_max = max_passes or settings.tenant_cleanup_max_passes
    report = CleanupReport(tenant_id=tenant_id)

    for step in steps:
        statement = build_batch_delete(step, tenant_id, resolved_batch)
        deleted = 0
        passes = 0
        while passes < resolved_max:
            passes += 1
            try:
                async with transaction(session):
                    result = await session.execute(statement)
            except DBAPIError as exc:
                if not is_missing_table_error(exc):
                    raise
                logger.info("tenant_cleanup_table_missing tenant_id=%s table=%s", tenant_id, step.table)
                report.skipped.append(step.table)
                break
            affected = result.rowcount or 0
            if affected == 0:
                break
            deleted += affected
        else:
            logger.warning(
                "tenant_cleanup_pass_limit tenant_id=%s table=%s passes=%s",
                tenant_id,
                step.table,
                resolved_max,
            )
        if deleted:
            report.deleted[step.table] = deleted

    logger.info(
        "tenant_cleanup_complete tenant_id=%s deleted=%s skipped=%s",
        tenant_id,
        report.total_deleted,
        len(report.skipped),
    )
    return report
