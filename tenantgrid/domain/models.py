from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tenantgrid.core.clock import utc_now


# JSONB in Postgres, plain JSON elsewhere so the test suite can run on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")
Credits = Numeric(15, 4)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    domain: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    # Only active and trial tenants resolve for scope lookups.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    organization_type: Mapped[str] = mapped_column(String, default="standalone", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantUser(Base):
    __tablename__ = "tenant_users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist RBAC role as a simple string for fast lookup and migration safety.
    role: Mapped[str] = mapped_column(String, default="reader", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Mirrors the active System Administrator assignment for cheap reads.
    is_tenant_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("tenant_users.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (
        Index("ix_organizations_tenant_parent", "tenant_id", "parent_organization_id"),
        Index("ix_organizations_tenant_path", "tenant_id", "hierarchy_path"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    parent_organization_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("organizations.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String, nullable=True)
    organization_type: Mapped[str] = mapped_column(String, default="standalone", nullable=False)
    organization_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Dot-joined ancestor ids, root first; empty for roots.
    hierarchy_path: Mapped[str] = mapped_column(String, default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    location_type: Mapped[str] = mapped_column(String, default="office", nullable=False)
    address: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # {"max_occupancy", "current_occupancy", "resources"}
    capacity: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    timezone: Mapped[str] = mapped_column(String, default="UTC", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_headquarters: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class LocationAssignment(Base):
    __tablename__ = "location_assignments"
    __table_args__ = (
        # At most one active primary assignment per (location, entity) pair.
        Index(
            "uq_location_assignments_active_primary",
            "location_id",
            "entity_id",
            unique=True,
            postgresql_where=text("assignment_type = 'primary' AND is_active"),
            sqlite_where=text("assignment_type = 'primary' AND is_active"),
        ),
        Index("ix_location_assignments_entity", "entity_type", "entity_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    location_id: Mapped[str] = mapped_column(
        String, ForeignKey("locations.id", ondelete="CASCADE"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    assignment_type: Mapped[str] = mapped_column(String, default="primary", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    credit_sharing_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    credit_sharing_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("0"), nullable=False
    )
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class LocationResource(Base):
    __tablename__ = "location_resources"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    location_id: Mapped[str] = mapped_column(
        String, ForeignKey("locations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit: Mapped[str | None] = mapped_column(String, nullable=True)
    credit_cost: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LocationUsage(Base):
    __tablename__ = "location_usage"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    location_id: Mapped[str] = mapped_column(
        String, ForeignKey("locations.id", ondelete="CASCADE"), index=True
    )
    usage_type: Mapped[str] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credit_consumed: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)


class CreditConfiguration(Base):
    __tablename__ = "credit_configurations"
    __table_args__ = (
        Index(
            "ix_credit_configurations_lookup",
            "operation_code",
            "scope",
            "tenant_id",
            "entity_id",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # global | tenant | organization | location
    scope: Mapped[str] = mapped_column(String, nullable=False)
    # Null only for global defaults.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null applies to every application.
    application_code: Mapped[str | None] = mapped_column(String, nullable=True)
    operation_code: Mapped[str] = mapped_column(String, nullable=False)
    credit_cost: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String, default="operation", nullable=False)
    unit_multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("1"), nullable=False)
    free_allowance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    free_allowance_period: Mapped[str | None] = mapped_column(String, nullable=True)
    # Ordered [{"threshold": n, "cost": "x"}] unit-cost tiers.
    volume_tiers: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonType, nullable=True)
    allow_overage: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    overage_limit: Mapped[Decimal | None] = mapped_column(Credits, nullable=True)
    overage_period: Mapped[str | None] = mapped_column(String, nullable=True)
    overage_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    # Ancestor-level rows only apply to descendants when inherited.
    is_inherited: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_customized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class CreditBalance(Base):
    __tablename__ = "credits"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "entity_id",
            "application_code",
            name="uq_credits_entity_application",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    # Empty string marks the entity's shared balance; otherwise an application allocation.
    application_code: Mapped[str] = mapped_column(String, default="", nullable=False)
    available_credits: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    reserved_credits: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    total_credits: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    # Ordered [{"pool_id", "amount", "source_type", "expires_at", "created_at"}]; amounts as strings.
    credit_pools: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    total_consumed: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    total_expired: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    total_transferred: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_frozen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_entity", "tenant_id", "entity_type", "entity_id", "created_at"),
    )

    # Append-only; rows are never updated once written.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    application_code: Mapped[str] = mapped_column(String, default="", nullable=False)
    transaction_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Credits, nullable=False)
    previous_balance: Mapped[Decimal] = mapped_column(Credits, nullable=False)
    new_balance: Mapped[Decimal] = mapped_column(Credits, nullable=False)
    operation_code: Mapped[str | None] = mapped_column(String, nullable=True)
    related_entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    initiated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class CreditUsageCounter(Base):
    __tablename__ = "credit_usage_counters"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "entity_id",
            "operation_code",
            "counter_kind",
            "period_type",
            "period_start",
            name="uq_credit_usage_counters_scope",
        ),
    )

    # Track free-allowance units and overage credits within day/month/year boundaries.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    operation_code: Mapped[str] = mapped_column(String)
    # free_allowance | overage
    counter_kind: Mapped[str] = mapped_column(String)
    period_type: Mapped[str] = mapped_column(String)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    used: Mapped[Decimal] = mapped_column(Credits, default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class CustomRole(Base):
    __tablename__ = "custom_roles"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_custom_roles_tenant_name"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    permissions: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserRoleAssignment(Base):
    __tablename__ = "user_role_assignments"
    __table_args__ = (
        # One active System Administrator per tenant, enforced by the store as well.
        Index(
            "uq_user_role_assignments_active_system_admin",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_system_admin AND is_active"),
            sqlite_where=text("is_system_admin AND is_active"),
        ),
        Index("ix_user_role_assignments_user", "tenant_id", "user_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("tenant_users.id"), nullable=False)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("custom_roles.id"), nullable=False)
    is_system_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_by: Mapped[str | None] = mapped_column(String, nullable=True)


class AdminTransferConfirmation(Base):
    __tablename__ = "admin_transfer_confirmations"
    __table_args__ = (
        Index("ix_admin_transfer_confirmations_expires_at", "expires_at"),
    )

    # One-time confirmation codes bound to a (tenant, current admin, target) transfer.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    current_admin_id: Mapped[str] = mapped_column(String, nullable=False)
    target_user_id: Mapped[str] = mapped_column(String, nullable=False)
    code_hash: Mapped[str] = mapped_column(String, nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrganizationMembership(Base):
    __tablename__ = "organization_memberships"
    __table_args__ = (
        Index("ix_organization_memberships_user", "tenant_id", "user_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    # organization | location
    entity_type: Mapped[str] = mapped_column(String, default="organization", nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    role_name: Mapped[str | None] = mapped_column(String, nullable=True)
    membership_type: Mapped[str] = mapped_column(String, default="direct", nullable=False)
    # active | pending | revoked
    membership_status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    access_level: Mapped[str] = mapped_column(String, default="standard", nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_access_sub_entities: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    # Store the event timestamp separately from creation to preserve source clocks.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for pre-auth or system events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
