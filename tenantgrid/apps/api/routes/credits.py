from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.apps.api.deps import Principal, get_actor, get_db, get_isolation_context, require_role
from tenantgrid.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgrid.apps.api.response import SuccessEnvelope, success_response
from tenantgrid.services.audit import AuditActor
from tenantgrid.services.credit_expiry import list_expiring_credits
from tenantgrid.services.isolation import IsolationContext, ensure_application, ensure_entity_visible
from tenantgrid.services.ledger import CreditEntity, get_ledger_service
from tenantgrid.services.scope import ScopeContext, resolve_scope


router = APIRouter(prefix="/credits", tags=["credits"], responses=DEFAULT_ERROR_RESPONSES)

EntityType = Literal["tenant", "organization", "location", "user"]


class ApplicationAllocationRequest(BaseModel):
    source_entity_type: EntityType
    source_entity_id: str
    target_application: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    purpose: str | None = None


class EntityAllocationRequest(BaseModel):
    source_entity_type: EntityType
    source_entity_id: str
    source_application_code: str = ""
    target_entity_type: EntityType
    target_entity_id: str
    target_application_code: str = ""
    amount: Decimal = Field(gt=0)
    purpose: str | None = None


class ConsumeRequest(BaseModel):
    operation_code: str = Field(min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    # Where the work happened; drives which configuration applies.
    organization_id: str | None = None
    location_id: str | None = None
    # Balance to charge; defaults to the most specific scope level.
    entity_type: EntityType | None = None
    entity_id: str | None = None


class ShareRequest(BaseModel):
    amount: Decimal = Field(gt=0)


class GrantRequest(BaseModel):
    entity_type: EntityType
    entity_id: str
    application_code: str = ""
    amount: Decimal = Field(gt=0)
    source_type: str = "purchase"
    expires_at: datetime | None = None
    description: str | None = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    entity_type: str
    entity_id: str
    application_code: str
    transaction_type: str
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    operation_code: str | None
    description: str | None
    metadata: dict[str, Any]
    created_at: datetime | None = None


class AllocationResponse(BaseModel):
    source: TransactionResponse
    target: TransactionResponse


class SharingResponse(BaseModel):
    location_id: str
    shared_total: Decimal
    location_transaction: TransactionResponse | None
    shares: list[TransactionResponse]


class BalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    application_code: str
    available_credits: Decimal
    total_credits: Decimal
    reserved_credits: Decimal
    total_consumed: Decimal
    total_expired: Decimal
    total_transferred: Decimal
    credit_pools: list[dict[str, Any]]
    is_active: bool
    is_frozen: bool


class ExpiringPoolResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    application_code: str
    pool_id: str
    amount: Decimal
    expires_at: datetime


def _transaction(record) -> TransactionResponse:
    return TransactionResponse.model_validate(record)


@router.post("/allocate/application", response_model=SuccessEnvelope[AllocationResponse])
async def allocate_to_application(
    request: Request,
    payload: ApplicationAllocationRequest,
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(
        db, context, entity_type=payload.source_entity_type, entity_id=payload.source_entity_id
    )
    ensure_application(context, payload.target_application)
    result = await get_ledger_service().allocate_to_application(
        db,
        tenant_id=principal.tenant_id,
        source=CreditEntity(payload.source_entity_type, payload.source_entity_id),
        target_application=payload.target_application,
        amount=payload.amount,
        purpose=payload.purpose,
        actor=actor,
    )
    data = AllocationResponse(source=_transaction(result.source), target=_transaction(result.target))
    return success_response(request=request, data=data)


@router.post("/allocate", response_model=SuccessEnvelope[AllocationResponse])
async def allocate(
    request: Request,
    payload: EntityAllocationRequest,
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    for entity_type, entity_id, application_code in (
        (payload.source_entity_type, payload.source_entity_id, payload.source_application_code),
        (payload.target_entity_type, payload.target_entity_id, payload.target_application_code),
    ):
        await ensure_entity_visible(db, context, entity_type=entity_type, entity_id=entity_id)
        ensure_application(context, application_code)
    result = await get_ledger_service().allocate(
        db,
        tenant_id=principal.tenant_id,
        source=CreditEntity(
            payload.source_entity_type, payload.source_entity_id, payload.source_application_code
        ),
        target=CreditEntity(
            payload.target_entity_type, payload.target_entity_id, payload.target_application_code
        ),
        amount=payload.amount,
        purpose=payload.purpose,
        actor=actor,
    )
    data = AllocationResponse(source=_transaction(result.source), target=_transaction(result.target))
    return success_response(request=request, data=data)


@router.post("/consume", response_model=SuccessEnvelope[TransactionResponse])
async def consume(
    request: Request,
    payload: ConsumeRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if (payload.entity_type is None) != (payload.entity_id is None):
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_REQUEST", "message": "entity_type and entity_id must be given together"},
        )
    chain = await resolve_scope(
        db,
        ScopeContext(
            tenant_id=principal.tenant_id,
            organization_id=payload.organization_id,
            location_id=payload.location_id,
            user_id=principal.user_id,
            application_code=context.application_code,
        ),
    )
    if payload.entity_type and payload.entity_id:
        entity = CreditEntity(payload.entity_type, payload.entity_id)
    else:
        level = chain.most_specific
        entity = CreditEntity(level.scope, level.entity_id)
    await ensure_entity_visible(db, context, entity_type=entity.entity_type, entity_id=entity.entity_id)
    ledger = get_ledger_service()
    entity = await ledger.resolve_consumption_entity(
        db,
        tenant_id=principal.tenant_id,
        entity=entity,
        application_code=context.application_code,
    )
    record = await ledger.consume(
        db,
        tenant_id=principal.tenant_id,
        entity=entity,
        operation_code=payload.operation_code,
        quantity=payload.quantity,
        scope_chain=chain,
        actor=actor,
    )
    return success_response(request=request, data=_transaction(record))


@router.post("/share/{location_id}", response_model=SuccessEnvelope[SharingResponse])
async def share(
    location_id: str,
    request: Request,
    payload: ShareRequest,
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="location", entity_id=location_id)
    result = await get_ledger_service().transfer_with_sharing(
        db,
        tenant_id=principal.tenant_id,
        location_id=location_id,
        amount=payload.amount,
        actor=actor,
    )
    data = SharingResponse(
        location_id=result.location_id,
        shared_total=result.shared_total,
        location_transaction=_transaction(result.location_transaction) if result.location_transaction else None,
        shares=[_transaction(row) for row in result.shares],
    )
    return success_response(request=request, data=data)


@router.post("/grant", response_model=SuccessEnvelope[TransactionResponse], status_code=201)
async def grant(
    request: Request,
    payload: GrantRequest,
    principal: Principal = Depends(require_role("admin")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type=payload.entity_type, entity_id=payload.entity_id)
    ensure_application(context, payload.application_code)
    record = await get_ledger_service().add_credits(
        db,
        tenant_id=principal.tenant_id,
        entity=CreditEntity(payload.entity_type, payload.entity_id, payload.application_code),
        amount=payload.amount,
        source_type=payload.source_type,
        expires_at=payload.expires_at,
        description=payload.description,
        actor=actor,
    )
    return success_response(request=request, data=_transaction(record))


@router.get("/balance/{entity_type}/{entity_id}", response_model=SuccessEnvelope[BalanceResponse])
async def read_balance(
    entity_type: EntityType,
    entity_id: str,
    request: Request,
    application_code: str = Query(default=""),
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type=entity_type, entity_id=entity_id)
    ensure_application(context, application_code)
    view = await get_ledger_service().get_balance(
        db,
        tenant_id=principal.tenant_id,
        entity=CreditEntity(entity_type, entity_id, application_code),
    )
    if view is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "No credit balance for entity"},
        )
    return success_response(request=request, data=BalanceResponse.model_validate(view))


@router.get(
    "/transactions/{entity_type}/{entity_id}",
    response_model=SuccessEnvelope[list[TransactionResponse]],
)
async def read_transactions(
    entity_type: EntityType,
    entity_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type=entity_type, entity_id=entity_id)
    records = await get_ledger_service().list_transactions(
        db,
        tenant_id=principal.tenant_id,
        entity_type=entity_type,
        entity_id=entity_id,
        application_code=context.application_code,
        limit=limit,
    )
    return success_response(request=request, data=[_transaction(row) for row in records])


@router.get("/expiring", response_model=SuccessEnvelope[list[ExpiringPoolResponse]])
async def read_expiring(
    request: Request,
    within_days: int | None = Query(default=None, ge=1, le=366),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    pools = await list_expiring_credits(db, tenant_id=principal.tenant_id, within_days=within_days)
    return success_response(request=request, data=[ExpiringPoolResponse.model_validate(pool) for pool in pools])
