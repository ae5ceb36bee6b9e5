from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgrid.apps.api.deps import Principal, get_actor, get_db, get_isolation_context, require_role
from tenantgrid.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantgrid.apps.api.response import SuccessEnvelope, success_response
from tenantgrid.services.audit import AuditActor
from tenantgrid.services.hierarchy import (
    OrganizationAttributes,
    OrganizationNode,
    create_organization,
    delete_organization,
    get_hierarchy,
    get_organization_in_tenant,
    get_subtree,
    move_organization,
    update_organization,
)
from tenantgrid.services.isolation import (
    IsolationContext,
    ensure_entity_visible,
    ensure_same_tenant,
    visible_organization_ids,
)


router = APIRouter(prefix="/organizations", tags=["organizations"], responses=DEFAULT_ERROR_RESPONSES)


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    tax_id: str | None = None
    organization_type: str | None = None


class SubOrganizationCreateRequest(OrganizationCreateRequest):
    parent_organization_id: str


class OrganizationPatchRequest(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    tax_id: str | None = None


class OrganizationMoveRequest(BaseModel):
    # Null moves the organization to the root of the tenant.
    new_parent_id: str | None = None


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    parent_organization_id: str | None
    name: str
    description: str | None
    tax_id: str | None
    organization_type: str
    organization_level: int
    hierarchy_path: str
    is_active: bool
    created_at: datetime | None = None


class OrganizationNodeResponse(OrganizationResponse):
    children: list[OrganizationNodeResponse] = Field(default_factory=list)


OrganizationNodeResponse.model_rebuild()


class HierarchyResponse(BaseModel):
    tenant_id: str
    total_organizations: int
    hierarchy: list[OrganizationNodeResponse]


class DeleteOrganizationResponse(BaseModel):
    deactivated_ids: list[str]


def _node_response(node: OrganizationNode) -> OrganizationNodeResponse:
    base = OrganizationResponse.model_validate(node.organization).model_dump()
    return OrganizationNodeResponse(**base, children=[_node_response(child) for child in node.children])


@router.post("/parent", response_model=SuccessEnvelope[OrganizationResponse], status_code=201)
async def create_parent_organization(
    request: Request,
    payload: OrganizationCreateRequest,
    principal: Principal = Depends(require_role("editor")),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization = await create_organization(
        db,
        tenant_id=principal.tenant_id,
        parent_organization_id=None,
        attrs=OrganizationAttributes(
            name=payload.name,
            description=payload.description,
            tax_id=payload.tax_id,
            organization_type=payload.organization_type,
        ),
        actor=actor,
    )
    return success_response(request=request, data=OrganizationResponse.model_validate(organization))


@router.post("/sub", response_model=SuccessEnvelope[OrganizationResponse], status_code=201)
async def create_sub_organization(
    request: Request,
    payload: SubOrganizationCreateRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(
        db, context, entity_type="organization", entity_id=payload.parent_organization_id
    )
    organization = await create_organization(
        db,
        tenant_id=principal.tenant_id,
        parent_organization_id=payload.parent_organization_id,
        attrs=OrganizationAttributes(
            name=payload.name,
            description=payload.description,
            tax_id=payload.tax_id,
        ),
        actor=actor,
    )
    return success_response(request=request, data=OrganizationResponse.model_validate(organization))


@router.get("/hierarchy/{tenant_id}", response_model=SuccessEnvelope[HierarchyResponse])
async def read_hierarchy(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_same_tenant(principal.tenant_id, tenant_id, resource_type="tenant")
    view = await get_hierarchy(
        db,
        tenant_id=principal.tenant_id,
        visible_ids=await visible_organization_ids(db, context),
    )
    payload = HierarchyResponse(
        tenant_id=view.tenant_id,
        total_organizations=view.total_organizations,
        hierarchy=[_node_response(node) for node in view.roots],
    )
    return success_response(request=request, data=payload)


@router.put("/move/{organization_id}", response_model=SuccessEnvelope[OrganizationResponse])
async def move(
    organization_id: str,
    request: Request,
    payload: OrganizationMoveRequest,
    principal: Principal = Depends(require_role("admin")),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization = await move_organization(
        db,
        tenant_id=principal.tenant_id,
        organization_id=organization_id,
        new_parent_id=payload.new_parent_id,
        actor=actor,
    )
    return success_response(request=request, data=OrganizationResponse.model_validate(organization))


@router.get("/{organization_id}", response_model=SuccessEnvelope[OrganizationResponse])
async def read_organization(
    organization_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization = await get_organization_in_tenant(
        db, tenant_id=principal.tenant_id, organization_id=organization_id
    )
    await ensure_entity_visible(db, context, entity_type="organization", entity_id=organization.id)
    return success_response(request=request, data=OrganizationResponse.model_validate(organization))


@router.get("/{organization_id}/subtree", response_model=SuccessEnvelope[list[OrganizationResponse]])
async def read_subtree(
    organization_id: str,
    request: Request,
    include_inactive: bool = Query(default=False),
    principal: Principal = Depends(require_role("reader")),
    context: IsolationContext = Depends(get_isolation_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    descendants = await get_subtree(
        db,
        tenant_id=principal.tenant_id,
        organization_id=organization_id,
        include_inactive=include_inactive,
    )
    await ensure_entity_visible(db, context, entity_type="organization", entity_id=organization_id)
    return success_response(
        request=request,
        data=[OrganizationResponse.model_validate(row) for row in descendants],
    )


@router.patch("/{organization_id}", response_model=SuccessEnvelope[OrganizationResponse])
async def patch_organization(
    organization_id: str,
    request: Request,
    payload: OrganizationPatchRequest,
    principal: Principal = Depends(require_role("editor")),
    context: IsolationContext = Depends(get_isolation_context),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_entity_visible(db, context, entity_type="organization", entity_id=organization_id)
    organization = await update_organization(
        db,
        tenant_id=principal.tenant_id,
        organization_id=organization_id,
        name=payload.name,
        description=payload.description,
        tax_id=payload.tax_id,
        actor=actor,
    )
    return success_response(request=request, data=OrganizationResponse.model_validate(organization))


@router.delete("/{organization_id}", response_model=SuccessEnvelope[DeleteOrganizationResponse])
async def remove_organization(
    organization_id: str,
    request: Request,
    include_subtree: bool = Query(default=False),
    principal: Principal = Depends(require_role("admin")),
    actor: AuditActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deactivated = await delete_organization(
        db,
        tenant_id=principal.tenant_id,
        organization_id=organization_id,
        include_subtree=include_subtree,
        actor=actor,
    )
    return success_response(request=request, data=DeleteOrganizationResponse(deactivated_ids=deactivated))
