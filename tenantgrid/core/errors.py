from __future__ import annotations

from decimal import Decimal
from typing import Any


# Credit amounts are stored and reported at four decimal places.
CREDIT_QUANTUM = Decimal("0.0001")


class TenantGridError(Exception):
    """Base error for TenantGrid.

    Every domain error carries a stable machine code, the HTTP status the API
    layer should answer with, and a details mapping that is safe to show to
    the caller.
    """

    code = "TENANTGRID_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EntityNotFound(TenantGridError):
    """Referenced row does not exist inside the caller's tenant."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidRequest(TenantGridError):
    """Request values fail domain validation."""

    code = "INVALID_REQUEST"
    status_code = 400


class InvalidHierarchy(TenantGridError):
    """Parent missing, in another tenant, or the tree change is not allowed."""

    code = "INVALID_HIERARCHY"
    status_code = 400


class CycleDetected(TenantGridError):
    """Move would place an organization under its own descendant."""

    code = "CYCLE_DETECTED"
    status_code = 409


class ScopeNotFound(TenantGridError):
    """Tenant, organization, or location in the request context does not resolve."""

    code = "SCOPE_NOT_FOUND"
    status_code = 404


class OperationCostNotConfigured(TenantGridError):
    """No credit configuration exists for the operation at any scope."""

    code = "OPERATION_COST_NOT_CONFIGURED"
    status_code = 422


class _BalanceError(TenantGridError):
    status_code = 402

    def __init__(
        self,
        message: str,
        *,
        balance: Decimal,
        requested: Decimal,
        details: dict[str, Any] | None = None,
    ) -> None:
        balance = Decimal(balance).quantize(CREDIT_QUANTUM)
        requested = Decimal(requested).quantize(CREDIT_QUANTUM)
        shortfall = requested - balance if requested > balance else Decimal("0").quantize(CREDIT_QUANTUM)
        payload = {
            "balance": str(balance),
            "requested": str(requested),
            "shortfall": str(shortfall),
        }
        payload.update(details or {})
        super().__init__(message, details=payload)
        self.balance = balance
        self.requested = requested
        self.shortfall = shortfall


class InsufficientCredits(_BalanceError):
    """Consumption would overdraw the balance beyond the allowed overage."""

    code = "INSUFFICIENT_CREDITS"


class InsufficientSourceBalance(_BalanceError):
    """Allocation source cannot cover the requested amount."""

    code = "INSUFFICIENT_SOURCE_BALANCE"


class SharingPercentagesInvalid(TenantGridError):
    """Active credit-sharing percentages for a location exceed 100."""

    code = "SHARING_PERCENTAGES_INVALID"
    status_code = 400


class ConfirmationRequired(TenantGridError):
    """Forced admin transfer needs a matching one-time confirmation code."""

    code = "CONFIRMATION_REQUIRED"

    def __init__(self, message: str, *, status_code: int, details: dict[str, Any]) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class CannotDeleteOnlyAdmin(TenantGridError):
    """Sole System Administrator cannot be removed."""

    code = "CANNOT_DELETE_ONLY_ADMIN"
    status_code = 409


class TenantMismatch(TenantGridError):
    """Target entity belongs to a different tenant than the caller."""

    code = "TENANT_MISMATCH"
    status_code = 403
