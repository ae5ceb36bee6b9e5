from __future__ import annotations

import asyncio
import time
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.clock import utc_now
from tenantgrid.core.config import get_settings
from tenantgrid.domain.models import ApiKey, TenantUser
from tenantgrid.persistence.db import get_session
from tenantgrid.services.audit import AuditActor, get_request_context, record_event
from tenantgrid.services.auth.api_keys import hash_api_key, key_rejection, normalize_role, role_allows
from tenantgrid.services.isolation import IsolationContext


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request, closed on success or error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity; tenant_id always comes from the credential, never the body.
    subject_id: str
    tenant_id: str
    role: str
    api_key_id: str
    user_id: str | None = None
    auth_method: str = "api_key"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


_REJECTIONS = {
    "revoked": lambda: _auth_error("API key is revoked or inactive"),
    "expired": lambda: _auth_error("API key expired"),
    "tenant_mismatch": lambda: _forbidden_error("Tenant mismatch for API key"),
}


async def _record_auth_failure(
    db: AsyncSession,
    request: Request,
    exc: HTTPException,
    *,
    tenant_id: str | None = None,
    actor_id: str | None = None,
) -> None:
    request_ctx = get_request_context(request)
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    await record_event(
        db,
        tenant_id=tenant_id,
        actor=AuditActor(actor_type="api_key" if actor_id else "anonymous", actor_id=actor_id, **request_ctx),
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="auth",
        metadata={"path": request.url.path, "method": request.method},
        error_code=detail.get("code"),
    )


async def _cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    if ttl_s <= 0:
        return None
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if entry is None:
            return None
        expires_at, principal = entry
        if expires_at <= time.time():
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _cache_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def clear_auth_cache() -> None:
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Local development only: identity comes from plain headers.
    tenant_id = request.headers.get("X-Tenant-Id")
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", "admin"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    user_id = request.headers.get("X-User-Id")
    return Principal(
        subject_id=user_id or f"dev-{tenant_id}",
        tenant_id=tenant_id,
        role=role,
        api_key_id="dev-bypass",
        user_id=user_id,
        auth_method="dev_bypass",
    )


async def _principal_from_api_key(db: AsyncSession, request: Request, bearer_token: str) -> Principal:
    settings = get_settings()
    key_hash = hash_api_key(bearer_token)
    cached = await _cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached is not None:
        return cached
    try:
        result = await db.execute(
            select(ApiKey, TenantUser)
            .join(TenantUser, ApiKey.user_id == TenantUser.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    row = result.first()
    if row is None:
        error = _auth_error("Invalid API key")
        await _record_auth_failure(db, request, error)
        raise error
    api_key, user = row
    rejection = key_rejection(
        revoked_at=api_key.revoked_at,
        expires_at=api_key.expires_at,
        key_tenant_id=api_key.tenant_id,
        user_tenant_id=user.tenant_id,
        user_active=user.is_active,
        now=utc_now(),
    )
    if rejection is not None:
        error = _REJECTIONS[rejection]()
        await _record_auth_failure(db, request, error, tenant_id=api_key.tenant_id, actor_id=api_key.id)
        raise error
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc
    principal = Principal(
        subject_id=user.id,
        tenant_id=user.tenant_id,
        role=role,
        api_key_id=api_key.id,
        user_id=user.id,
    )
    await _cache_principal(key_hash, principal, settings.auth_cache_ttl_s)
    return principal


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    try:
        bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    except HTTPException as exc:
        await _record_auth_failure(db, request, exc)
        raise
    if bearer_token and settings.auth_enabled:
        return await _principal_from_api_key(db, request, bearer_token)
    if settings.auth_dev_bypass:
        return _principal_from_dev_headers(request)
    error = _auth_error("Missing API key" if settings.auth_enabled else "Authentication disabled")
    await _record_auth_failure(db, request, error)
    raise error


def require_role(minimum_role: str):
    # Dependency factory enforcing the API role before any handler work.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            request_ctx = get_request_context(request)
            await record_event(
                db,
                tenant_id=principal.tenant_id,
                actor=AuditActor(
                    actor_type=principal.auth_method,
                    actor_id=principal.subject_id,
                    actor_role=principal.role,
                    **request_ctx,
                ),
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                metadata={"path": request.url.path, "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def get_actor(request: Request, principal: Principal = Depends(get_current_principal)) -> AuditActor:
    return AuditActor(
        actor_type=principal.auth_method,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        **get_request_context(request),
    )


def get_isolation_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> IsolationContext:
    # Application context comes from the header; tenant comes only from the credential.
    settings = get_settings()
    application_code = request.headers.get(settings.application_header) or settings.default_application_code
    return IsolationContext(
        tenant_id=principal.tenant_id,
        application_code=application_code,
        caller_user_id=principal.user_id,
        is_tenant_admin=principal.role == "admin",
    )
