from __future__ import annotations

from datetime import datetime
import hashlib
import secrets
from uuid import uuid4

from tenantgrid.core.clock import as_utc


# API roles gate route access; the System Administrator role is a separate tenant-level grant.
ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "editor": 2,
    "admin": 3,
}

API_KEY_PREFIX = "tgk"


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Only the digest is stored; lookups hash the presented bearer token the same way.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    """Mint a new key and return ``(key_id, raw_key, key_prefix, key_hash)``.

    The key id is embedded in the token so operators can trace a leaked secret
    back to its row without storing the plaintext.
    """
    resolved_id = key_id or uuid4().hex
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_api_key(raw_key)


def key_rejection(
    *,
    revoked_at: datetime | None,
    expires_at: datetime | None,
    key_tenant_id: str,
    user_tenant_id: str,
    user_active: bool,
    now: datetime,
) -> str | None:
    # Returns None for a usable key, otherwise "revoked", "expired" or "tenant_mismatch".
    if revoked_at is not None or not user_active:
        return "revoked"
    if expires_at is not None and as_utc(expires_at) <= now:
        return "expired"
    if key_tenant_id != user_tenant_id:
        return "tenant_mismatch"
    return None
