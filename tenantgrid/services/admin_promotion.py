from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import secrets
from typing import Any, Callable, Union
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.core.clock import utc_now
from tenantgrid.core.config import get_settings
from tenantgrid.core.errors import (
    CannotDeleteOnlyAdmin,
    ConfirmationRequired,
    EntityNotFound,
    InvalidRequest,
)
from tenantgrid.domain.models import (
    AdminTransferConfirmation,
    CustomRole,
    TenantUser,
    UserRoleAssignment,
)
from tenantgrid.persistence.db import transaction
from tenantgrid.persistence.guards import tenant_predicate
from tenantgrid.persistence.repos.tenants import get_tenant_user, list_active_users
from tenantgrid.services.audit import AuditActor, stage_event


logger = logging.getLogger(__name__)

SYSTEM_ADMIN_ROLE_NAME = "System Administrator"
SYSTEM_ADMIN_ROLE_PRIORITY = 1000
ONLY_ADMIN_REASON = (
    "Cannot delete the only System Administrator. "
    "Promote another user to System Administrator first."
)


@dataclass(frozen=True)
class NoAdmin:
    tenant_id: str


@dataclass(frozen=True)
class HasAdmin:
    tenant_id: str
    user_id: str
    assignment_id: str
    assigned_at: datetime | None


AdminState = Union[NoAdmin, HasAdmin]


@dataclass(frozen=True)
class PromotionResult:
    tenant_id: str
    new_admin_id: str
    previous_admin_id: str | None
    assignment_id: str
    transferred: bool


@dataclass(frozen=True)
class PromotionImpact:
    tenant_id: str
    target_user_id: str
    current_admin_id: str | None
    requires_confirmation: bool
    current_admin_activity: dict[str, int]
    changes: list[str]
    recommendations: list[dict[str, str]]


@dataclass(frozen=True)
class DeletionCheck:
    user_id: str
    can_delete: bool
    reason: str | None


def confirmation_hash(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


def _new_confirmation_code() -> str:
    # Short enough to retype; single-use and bound to one transfer request.
    return secrets.token_hex(4).upper()


class AdminPromotionService:
    """Per-tenant System Administrator singleton: ``NoAdmin`` or ``HasAdmin(user)``.

    State is always derived from active role assignments in the store, never
    held in memory, so every server instance sees the same answer.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def get_admin_state(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        for_update: bool = False,
    ) -> AdminState:
        stmt = (
            select(UserRoleAssignment)
            .where(
                tenant_predicate(UserRoleAssignment, tenant_id),
                UserRoleAssignment.is_system_admin.is_(True),
                UserRoleAssignment.is_active.is_(True),
            )
            .order_by(UserRoleAssignment.assigned_at.desc())
        )
        if for_update:
            stmt = stmt.with_for_update()
        assignment = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        if assignment is None:
            return NoAdmin(tenant_id=tenant_id)
        return HasAdmin(
            tenant_id=tenant_id,
            user_id=assignment.user_id,
            assignment_id=assignment.id,
            assigned_at=assignment.assigned_at,
        )

    async def _ensure_role(
        self, session: AsyncSession, *, tenant_id: str, actor: AuditActor | None
    ) -> CustomRole:
        result = await session.execute(
            select(CustomRole).where(
                tenant_predicate(CustomRole, tenant_id),
                CustomRole.name == SYSTEM_ADMIN_ROLE_NAME,
            )
        )
        role = result.scalar_one_or_none()
        if role is None:
            role = CustomRole(
                id=uuid4().hex,
                tenant_id=tenant_id,
                name=SYSTEM_ADMIN_ROLE_NAME,
                description="Full tenant administration; exactly one holder per tenant.",
                permissions={"*": ["*"]},
                is_system_role=True,
                priority=SYSTEM_ADMIN_ROLE_PRIORITY,
                created_by=actor.actor_id if actor else None,
            )
            session.add(role)
            await session.flush()
        return role

    async def _load_target(self, session: AsyncSession, tenant_id: str, user_id: str) -> TenantUser:
        user = await get_tenant_user(session, tenant_id, user_id)
        if user is None:
            raise EntityNotFound("User not found in tenant", details={"user_id": user_id})
        if not user.is_active:
            raise InvalidRequest("User is inactive", details={"user_id": user_id})
        return user

    async def _consume_confirmation(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        current_admin_id: str,
        target_user_id: str,
        code: str,
        now: datetime,
    ) -> bool:
        result = await session.execute(
            select(AdminTransferConfirmation)
            .where(
                tenant_predicate(AdminTransferConfirmation, tenant_id),
                AdminTransferConfirmation.code_hash == confirmation_hash(code),
                AdminTransferConfirmation.current_admin_id == current_admin_id,
                AdminTransferConfirmation.target_user_id == target_user_id,
                AdminTransferConfirmation.used_at.is_(None),
                AdminTransferConfirmation.expires_at > now,
            )
            .with_for_update()
            .limit(1)
        )
        confirmation = result.scalar_one_or_none()
        if confirmation is None:
            return False
        confirmation.used_at = now
        return True

    async def issue_confirmation(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        current_admin_id: str,
        target_user_id: str,
        actor: AuditActor | None = None,
    ) -> tuple[str, datetime]:
        # Only the hash is stored; the plaintext goes back to the caller once.
        now = self._time_provider()
        code = _new_confirmation_code()
        expires_at = now + timedelta(seconds=get_settings().admin_transfer_code_ttl_seconds)
        async with transaction(session):
            session.add(
                AdminTransferConfirmation(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    current_admin_id=current_admin_id,
                    target_user_id=target_user_id,
                    code_hash=confirmation_hash(code),
                    expires_at=expires_at,
                )
            )
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="system_admin.transfer_confirmation_issued",
                outcome="pending",
                resource_type="user",
                resource_id=target_user_id,
                metadata={"current_admin_id": current_admin_id},
            )
        return code, expires_at

    async def promote(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        target_user_id: str,
        reason: str | None = None,
        force_transfer: bool = False,
        confirmation_code: str | None = None,
        actor: AuditActor | None = None,
    ) -> PromotionResult:
        """Make ``target_user_id`` the tenant's System Administrator.

        From ``NoAdmin`` this is unconditional. From ``HasAdmin`` it needs
        ``force_transfer`` plus the one-time code issued for this exact
        (current admin, target) pair; otherwise ``ConfirmationRequired`` is
        raised carrying a fresh code so the caller can re-submit. The old
        holder is demoted and the target promoted in one transaction.
        """
        now = self._time_provider()
        blocked: tuple[str, int, str] | None = None
        async with transaction(session):
            target = await self._load_target(session, tenant_id, target_user_id)
            state = await self.get_admin_state(session, tenant_id=tenant_id, for_update=True)
            if isinstance(state, HasAdmin):
                if state.user_id == target.id:
                    raise InvalidRequest(
                        "User is already the System Administrator",
                        details={"user_id": target.id},
                    )
                if not force_transfer:
                    blocked = (state.user_id, 409, "A System Administrator already exists")
                elif not confirmation_code:
                    blocked = (state.user_id, 400, "Confirmation code required for forced transfer")
                elif not await self._consume_confirmation(
                    session,
                    tenant_id=tenant_id,
                    current_admin_id=state.user_id,
                    target_user_id=target.id,
                    code=confirmation_code,
                    now=now,
                ):
                    blocked = (state.user_id, 400, "Confirmation code is invalid or expired")

            if blocked is None:
                result = await self._transfer(
                    session,
                    tenant_id=tenant_id,
                    target=target,
                    state=state,
                    reason=reason,
                    actor=actor,
                    now=now,
                )

        if blocked is not None:
            current_admin_id, status_code, message = blocked
            code, expires_at = await self.issue_confirmation(
                session,
                tenant_id=tenant_id,
                current_admin_id=current_admin_id,
                target_user_id=target_user_id,
                actor=actor,
            )
            logger.info(
                "system_admin_promotion_blocked tenant_id=%s target_user_id=%s status=%s",
                tenant_id,
                target_user_id,
                status_code,
            )
            raise ConfirmationRequired(
                message,
                status_code=status_code,
                details={
                    "current_admin_id": current_admin_id,
                    "target_user_id": target_user_id,
                    "force_transfer_required": True,
                    "required_code": code,
                    "expires_at": expires_at.isoformat(),
                },
            )
        logger.info(
            "system_admin_promoted tenant_id=%s new_admin_id=%s previous_admin_id=%s",
            tenant_id,
            result.new_admin_id,
            result.previous_admin_id,
        )
        return result

    async def _transfer(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        target: TenantUser,
        state: AdminState,
        reason: str | None,
        actor: AuditActor | None,
        now: datetime,
    ) -> PromotionResult:
        role = await self._ensure_role(session, tenant_id=tenant_id, actor=actor)
        actor_id = actor.actor_id if actor else None
        previous_admin_id = None
        if isinstance(state, HasAdmin):
            previous_admin_id = state.user_id
            previous_assignment = await session.get(UserRoleAssignment, state.assignment_id)
            previous_assignment.is_active = False
            previous_assignment.deactivated_at = now
            previous_assignment.deactivated_by = actor_id
            previous_user = await get_tenant_user(session, tenant_id, state.user_id)
            if previous_user is not None:
                previous_user.is_tenant_admin = False
            # Release the singleton slot before the new grant is inserted.
            await session.flush()
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="system_admin.demotion",
                outcome="success",
                resource_type="user",
                resource_id=state.user_id,
                metadata={"replaced_by": target.id, "reason": reason},
            )
        assignment = UserRoleAssignment(
            id=uuid4().hex,
            tenant_id=tenant_id,
            user_id=target.id,
            role_id=role.id,
            is_system_admin=True,
            is_active=True,
            reason=reason,
            assigned_by=actor_id,
            assigned_at=now,
        )
        session.add(assignment)
        target.is_tenant_admin = True
        stage_event(
            session,
            tenant_id=tenant_id,
            actor=actor,
            event_type="system_admin.promotion",
            outcome="success",
            resource_type="user",
            resource_id=target.id,
            metadata={"previous_admin_id": previous_admin_id, "reason": reason},
        )
        return PromotionResult(
            tenant_id=tenant_id,
            new_admin_id=target.id,
            previous_admin_id=previous_admin_id,
            assignment_id=assignment.id,
            transferred=previous_admin_id is not None,
        )

    async def _activity_counts(self, session: AsyncSession, tenant_id: str, user_id: str) -> dict[str, int]:
        roles_created = await session.execute(
            select(func.count(CustomRole.id)).where(
                tenant_predicate(CustomRole, tenant_id),
                CustomRole.created_by == user_id,
            )
        )
        roles_assigned = await session.execute(
            select(func.count(UserRoleAssignment.id)).where(
                tenant_predicate(UserRoleAssignment, tenant_id),
                UserRoleAssignment.assigned_by == user_id,
            )
        )
        return {
            "roles_created": int(roles_created.scalar_one()),
            "roles_assigned": int(roles_assigned.scalar_one()),
        }

    async def preview_promotion(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        target_user_id: str,
    ) -> PromotionImpact:
        # Read-only: nothing here may add, flush, or commit.
        target = await self._load_target(session, tenant_id, target_user_id)
        state = await self.get_admin_state(session, tenant_id=tenant_id)
        changes = [f"{target.id} becomes {SYSTEM_ADMIN_ROLE_NAME}"]
        recommendations: list[dict[str, str]] = []
        activity: dict[str, int] = {}
        current_admin_id = None
        if isinstance(state, HasAdmin):
            current_admin_id = state.user_id
            if state.user_id == target.id:
                changes = []
                recommendations.append(
                    {"type": "info", "message": "User already holds the System Administrator role."}
                )
            else:
                changes.append(f"{state.user_id} loses {SYSTEM_ADMIN_ROLE_NAME}")
                activity = await self._activity_counts(session, tenant_id, state.user_id)
                recommendations.append(
                    {
                        "type": "info",
                        "message": "Forced transfer with a confirmation code is required.",
                    }
                )
                if activity["roles_created"] > 10:
                    recommendations.append(
                        {
                            "type": "warning",
                            "message": "Current admin created many custom roles; review them after transfer.",
                        }
                    )
                if activity["roles_assigned"] > 20:
                    recommendations.append(
                        {
                            "type": "info",
                            "message": "Current admin assigned many roles; notify affected users.",
                        }
                    )
        return PromotionImpact(
            tenant_id=tenant_id,
            target_user_id=target.id,
            current_admin_id=current_admin_id,
            requires_confirmation=current_admin_id is not None and current_admin_id != target.id,
            current_admin_activity=activity,
            changes=changes,
            recommendations=recommendations,
        )

    async def get_current_system_admin(self, session: AsyncSession, *, tenant_id: str) -> TenantUser | None:
        state = await self.get_admin_state(session, tenant_id=tenant_id)
        if isinstance(state, NoAdmin):
            return None
        return await get_tenant_user(session, tenant_id, state.user_id)

    async def list_eligible_users(self, session: AsyncSession, *, tenant_id: str) -> list[TenantUser]:
        state = await self.get_admin_state(session, tenant_id=tenant_id)
        current = state.user_id if isinstance(state, HasAdmin) else None
        return [user for user in await list_active_users(session, tenant_id) if user.id != current]

    async def can_delete_user(self, session: AsyncSession, *, tenant_id: str, user_id: str) -> DeletionCheck:
        state = await self.get_admin_state(session, tenant_id=tenant_id)
        if isinstance(state, HasAdmin) and state.user_id == user_id:
            return DeletionCheck(user_id=user_id, can_delete=False, reason=ONLY_ADMIN_REASON)
        return DeletionCheck(user_id=user_id, can_delete=True, reason=None)

    async def deactivate_user(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user_id: str,
        actor: AuditActor | None = None,
    ) -> TenantUser:
        async with transaction(session):
            user = await get_tenant_user(session, tenant_id, user_id)
            if user is None:
                raise EntityNotFound("User not found in tenant", details={"user_id": user_id})
            state = await self.get_admin_state(session, tenant_id=tenant_id, for_update=True)
            if isinstance(state, HasAdmin) and state.user_id == user_id:
                raise CannotDeleteOnlyAdmin(ONLY_ADMIN_REASON, details={"user_id": user_id})
            user.is_active = False
            stage_event(
                session,
                tenant_id=tenant_id,
                actor=actor,
                event_type="user.deactivated",
                outcome="success",
                resource_type="user",
                resource_id=user_id,
            )
        return user


def impact_as_dict(impact: PromotionImpact) -> dict[str, Any]:
    return {
        "tenant_id": impact.tenant_id,
        "target_user_id": impact.target_user_id,
        "current_admin_id": impact.current_admin_id,
        "requires_confirmation": impact.requires_confirmation,
        "current_admin_activity": impact.current_admin_activity,
        "changes": impact.changes,
        "recommendations": impact.recommendations,
    }


_admin_promotion_service: AdminPromotionService | None = None


def get_admin_promotion_service() -> AdminPromotionService:
    global _admin_promotion_service
    if _admin_promotion_service is None:
        _admin_promotion_service = AdminPromotionService()
    return _admin_promotion_service


def reset_admin_promotion_service() -> None:
    global _admin_promotion_service
    _admin_promotion_service = None
