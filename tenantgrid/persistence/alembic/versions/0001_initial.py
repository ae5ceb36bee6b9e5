"""tenant hierarchy, credits and admin singleton tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=True, unique=True),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("organization_type", sa.String(), server_default="standalone", nullable=False),
        _created_at(),
    )

    op.create_table(
        "tenant_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), server_default="reader", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_tenant_admin", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_tenant_users_tenant_id", "tenant_users", ["tenant_id"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("tenant_users.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_tenant_id", "api_keys", ["tenant_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)

    # hierarchy_path holds the dot-joined ancestor ids.
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column(
            "parent_organization_id",
            sa.String(),
            sa.ForeignKey("organizations.id"),
            nullable=True,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tax_id", sa.String(), nullable=True),
        sa.Column("organization_type", sa.String(), server_default="standalone", nullable=False),
        sa.Column("organization_level", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("hierarchy_path", sa.String(), server_default="", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_organizations_tenant_id", "organizations", ["tenant_id"])
    op.create_index("ix_organizations_tenant_parent", "organizations", ["tenant_id", "parent_organization_id"])
    op.create_index("ix_organizations_tenant_path", "organizations", ["tenant_id", "hierarchy_path"])

    op.create_table(
        "locations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("location_type", sa.String(), server_default="office", nullable=False),
        sa.Column("address", postgresql.JSONB(), nullable=True),
        sa.Column("capacity", postgresql.JSONB(), nullable=True),
        sa.Column("timezone", sa.String(), server_default="UTC", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_headquarters", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_locations_tenant_id", "locations", ["tenant_id"])

    op.create_table(
        "location_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "location_id",
            sa.String(),
            sa.ForeignKey("locations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("assignment_type", sa.String(), server_default="primary", nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("credit_sharing_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("credit_sharing_percentage", sa.Numeric(5, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_location_assignments_location_id", "location_assignments", ["location_id"])
    op.create_index("ix_location_assignments_tenant_id", "location_assignments", ["tenant_id"])
    op.create_index("ix_location_assignments_entity", "location_assignments", ["entity_type", "entity_id"])
    # Enforced at write time: one active primary assignment per (location, entity).
    op.create_index(
        "uq_location_assignments_active_primary",
        "location_assignments",
        ["location_id", "entity_id"],
        unique=True,
        postgresql_where=sa.text("assignment_type = 'primary' AND is_active"),
    )

    op.create_table(
        "location_resources",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "location_id",
            sa.String(),
            sa.ForeignKey("locations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("unit", sa.String(), nullable=True),
        sa.Column("credit_cost", sa.Numeric(10, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_available", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_location_resources_location_id", "location_resources", ["location_id"])

    op.create_table(
        "location_usage",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "location_id",
            sa.String(),
            sa.ForeignKey("locations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("usage_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("credit_consumed", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_location_usage_location_id", "location_usage", ["location_id"])

    op.create_table(
        "credit_configurations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("application_code", sa.String(), nullable=True),
        sa.Column("operation_code", sa.String(), nullable=False),
        sa.Column("credit_cost", sa.Numeric(10, 4), nullable=False),
        sa.Column("unit", sa.String(), server_default="operation", nullable=False),
        sa.Column("unit_multiplier", sa.Numeric(10, 4), server_default=sa.text("1"), nullable=False),
        sa.Column("free_allowance", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("free_allowance_period", sa.String(), nullable=True),
        sa.Column("volume_tiers", postgresql.JSONB(), nullable=True),
        sa.Column("allow_overage", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("overage_limit", sa.Numeric(15, 4), nullable=True),
        sa.Column("overage_period", sa.String(), nullable=True),
        sa.Column("overage_cost", sa.Numeric(10, 4), nullable=True),
        sa.Column("is_inherited", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_customized", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_credit_configurations_tenant_id", "credit_configurations", ["tenant_id"])
    op.create_index(
        "ix_credit_configurations_lookup",
        "credit_configurations",
        ["operation_code", "scope", "tenant_id", "entity_id"],
    )

    op.create_table(
        "credits",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("application_code", sa.String(), server_default="", nullable=False),
        sa.Column("available_credits", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("reserved_credits", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("total_credits", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("credit_pools", postgresql.JSONB(), nullable=True),
        sa.Column("total_consumed", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("total_expired", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("total_transferred", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("is_frozen", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint(
            "tenant_id",
            "entity_type",
            "entity_id",
            "application_code",
            name="uq_credits_entity_application",
        ),
    )
    op.create_index("ix_credits_tenant_id", "credits", ["tenant_id"])

    # Append-only ledger; rows are never updated.
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("application_code", sa.String(), server_default="", nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(15, 4), nullable=False),
        sa.Column("previous_balance", sa.Numeric(15, 4), nullable=False),
        sa.Column("new_balance", sa.Numeric(15, 4), nullable=False),
        sa.Column("operation_code", sa.String(), nullable=True),
        sa.Column("related_entity_type", sa.String(), nullable=True),
        sa.Column("related_entity_id", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("initiated_by", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_credit_transactions_tenant_id", "credit_transactions", ["tenant_id"])
    op.create_index(
        "ix_credit_transactions_entity",
        "credit_transactions",
        ["tenant_id", "entity_type", "entity_id", "created_at"],
    )

    op.create_table(
        "credit_usage_counters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("operation_code", sa.String(), nullable=False),
        sa.Column("counter_kind", sa.String(), nullable=False),
        sa.Column("period_type", sa.String(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Numeric(15, 4), server_default=sa.text("0"), nullable=False),
        _updated_at(),
        sa.UniqueConstraint(
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
    op.create_index("ix_credit_usage_counters_tenant_id", "credit_usage_counters", ["tenant_id"])

    op.create_table(
        "custom_roles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("permissions", postgresql.JSONB(), nullable=True),
        sa.Column("is_system_role", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_custom_roles_tenant_name"),
    )
    op.create_index("ix_custom_roles_tenant_id", "custom_roles", ["tenant_id"])

    op.create_table(
        "user_role_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("tenant_users.id"), nullable=False),
        sa.Column("role_id", sa.String(), sa.ForeignKey("custom_roles.id"), nullable=False),
        sa.Column("is_system_admin", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_by", sa.String(), nullable=True),
    )
    op.create_index("ix_user_role_assignments_user", "user_role_assignments", ["tenant_id", "user_id"])
    # The store itself rejects a second active System Administrator per tenant.
    op.create_index(
        "uq_user_role_assignments_active_system_admin",
        "user_role_assignments",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_system_admin AND is_active"),
    )

    op.create_table(
        "admin_transfer_confirmations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("current_admin_id", sa.String(), nullable=False),
        sa.Column("target_user_id", sa.String(), nullable=False),
        sa.Column("code_hash", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_admin_transfer_confirmations_tenant_id", "admin_transfer_confirmations", ["tenant_id"])
    op.create_index("ix_admin_transfer_confirmations_code_hash", "admin_transfer_confirmations", ["code_hash"])
    op.create_index("ix_admin_transfer_confirmations_expires_at", "admin_transfer_confirmations", ["expires_at"])

    op.create_table(
        "organization_memberships",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), server_default="organization", nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("role_name", sa.String(), nullable=True),
        sa.Column("membership_type", sa.String(), server_default="direct", nullable=False),
        sa.Column("membership_status", sa.String(), server_default="active", nullable=False),
        sa.Column("access_level", sa.String(), server_default="standard", nullable=False),
        sa.Column("is_primary", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("can_access_sub_entities", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
    )
    op.create_index("ix_organization_memberships_user", "organization_memberships", ["tenant_id", "user_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    for table_name in (
        "audit_events",
        "organization_memberships",
        "admin_transfer_confirmations",
        "user_role_assignments",
        "custom_roles",
        "credit_usage_counters",
        "credit_transactions",
        "credits",
        "credit_configurations",
        "location_usage",
        "location_resources",
        "location_assignments",
        "locations",
        "organizations",
        "api_keys",
        "tenant_users",
        "tenants",
    ):
        op.drop_table(table_name)
