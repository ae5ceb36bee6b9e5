from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenantgrid.core.clock import utc_now
from tenantgrid.domain.models import AuditEvent
from tenantgrid.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "confirmation_code"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class AuditActor:
    # Who triggered a mutation; services receive this instead of raw request objects.
    actor_type: str = "system"
    actor_id: str | None = None
    actor_role: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


SYSTEM_ACTOR = AuditActor()


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if any(pattern in key.lower() for pattern in _SENSITIVE_KEY_PATTERNS):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


def build_audit_event(
    *,
    tenant_id: str | None,
    actor: AuditActor | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> AuditEvent:
    resolved = actor or SYSTEM_ACTOR
    return AuditEvent(
        occurred_at=utc_now(),
        tenant_id=tenant_id,
        actor_type=resolved.actor_type,
        actor_id=resolved.actor_id,
        actor_role=resolved.actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=resolved.request_id,
        ip_address=resolved.ip_address,
        user_agent=resolved.user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )


def stage_event(session: AsyncSession, **kwargs: Any) -> None:
    # Add the audit row to the caller's unit of work so it commits with the mutation.
    session.add(build_audit_event(**kwargs))


async def record_event(session: AsyncSession, **kwargs: Any) -> None:
    """Write and commit an audit row on its own, best-effort.

    Used for outcomes that are recorded outside a domain mutation, such as
    authentication failures. A failed write is logged, never raised.
    """
    event = build_audit_event(**kwargs)
    try:
        session.add(event)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            event.event_type,
            event.request_id,
            exc_info=exc,
        )


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent, tenant_id))
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    result = await session.execute(stmt.order_by(AuditEvent.id.desc()).limit(limit))
    return list(result.scalars().all())
