from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mariacrm.api.errors import http_error
from mariacrm.core.auth import get_auth_context, get_principal, require_api_key_permission
from mariacrm.core.database import get_db
from mariacrm.crm.schemas import (
    AIProfileUpdateRequest,
    BulkAssignCampaignRequest,
    BulkAssignCampaignResponse,
    BulkResponse,
    CampaignCreate,
    CampaignListResponse,
    CampaignResponse,
    CampaignUpdate,
    ClientBulkDeleteRequest,
    ClientCreate,
    ClientListResponse,
    ClientResponse,
    ClientUpdate,
    DocumentResponse,
    LeadBulkDeleteRequest,
    LeadBulkUpdateRequest,
    LeadConvertRequest,
    LeadConvertResponse,
    LeadCreate,
    LeadImportRequest,
    LeadListResponse,
    LeadMapResponse,
    LeadResponse,
    LeadStatsResponse,
    LeadUpdate,
    PaymentCreate,
    PaymentResponse,
    ProductCreate,
    ProductListResponse,
    ProductResponse,
    ProductUpdate,
    ScopedBody,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from mariacrm.crm.service import CampaignService, ClientService, LeadService, ProductService, parse_uuid
from mariacrm.platform.security import AuthContext, require_permission, validate_body_scope

leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
clients_router = APIRouter(prefix="/api/clients", tags=["crm.clients"])
campaigns_router = APIRouter(prefix="/api/campaigns", tags=["crm.campaigns"])
products_router = APIRouter(prefix="/api/products", tags=["crm.products"])
client_service = ClientService()
lead_service = LeadService(client_service)
product_service = ProductService()
campaign_service = CampaignService(product_service)


def _check_body(ctx: AuthContext, body: ScopedBody) -> None:
    validate_body_scope(ctx, body.tenant_id, body.organization_id)


@leads_router.post("/get", response_model=LeadMapResponse)
def get_leads_map(
    request: Request,
    body: ScopedBody | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> LeadMapResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:read")
        if body is not None:
            _check_body(ctx, body)
        return lead_service.get_map(db, ctx)
    except HTTPException as exc:
        return http_error(request, exc, "lead_get_failed")


@leads_router.get("", response_model=LeadListResponse)
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = None,
    priority: str | None = None,
    campaign_id: str | None = Query(default=None, alias="campaignId"),
    q: str | None = None,
    cursor: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> LeadListResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:read")
        leads, next_cursor = lead_service.list_leads(
            db,
            ctx,
            {"status": status_filter, "source": source, "priority": priority, "campaign_id": campaign_id, "q": q},
            cursor,
            limit,
        )
        return LeadListResponse(data=leads, next_cursor=next_cursor)
    except HTTPException as exc:
        return http_error(request, exc, "lead_list_failed")


@leads_router.get("/stats", response_model=LeadStatsResponse)
def lead_stats(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> LeadStatsResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:read")
        return LeadStatsResponse(stats=lead_service.stats(db, ctx))
    except HTTPException as exc:
        return http_error(request, exc, "lead_stats_failed")


@leads_router.post("", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LeadResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:create")
        _check_body(ctx, dto)
        return LeadResponse(lead=lead_service.create_lead(db, ctx, dto))
    except HTTPException as exc:
        return http_error(request, exc, "lead_create_failed")


@leads_router.post("/admin/create", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
def create_lead_with_api_key(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_api_key_permission("leads:create")),
) -> LeadResponse | JSONResponse:
    try:
        _check_body(ctx, dto)
        return LeadResponse(lead=lead_service.create_lead(db, ctx, dto))
    except HTTPException as exc:
        return http_error(request, exc, "lead_create_failed")


@leads_router.put("/status/update", response_model=StatusUpdateResponse)
def update_lead_status(
    request: Request,
    dto: StatusUpdateRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> StatusUpdateResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:update")
        _check_body(ctx, dto)
        return lead_service.update_status(db, ctx, dto)
    except HTTPException as exc:
        return http_error(request, exc, "lead_status_update_failed")


@leads_router.delete("/admin/bulk-delete", response_model=BulkResponse, response_model_exclude_none=True)
def bulk_delete_leads(
    request: Request,
    dto: LeadBulkDeleteRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> BulkResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:delete")
        _check_body(ctx, dto)
        return lead_service.bulk_delete(db, ctx, dto.lead_ids)
    except HTTPException as exc:
        return http_error(request, exc, "lead_bulk_delete_failed")


@leads_router.put("/admin/bulk-update", response_model=BulkResponse, response_model_exclude_none=True)
def bulk_update_leads(
    request: Request,
    dto: LeadBulkUpdateRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> BulkResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:update")
        _check_body(ctx, dto)
        return lead_service.bulk_update(db, ctx, dto.lead_ids, dto.updates)
    except HTTPException as exc:
        return http_error(request, exc, "lead_bulk_update_failed")


@leads_router.post(
    "/bulk-assign-campaign",
    response_model=BulkAssignCampaignResponse,
    response_model_exclude_none=True,
)
def bulk_assign_campaign(
    request: Request,
    dto: BulkAssignCampaignRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> BulkAssignCampaignResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:update")
        _check_body(ctx, dto)
        return lead_service.bulk_assign_campaign(db, ctx, dto.lead_ids, dto.campaign_id)
    except HTTPException as exc:
        return http_error(request, exc, "lead_bulk_assign_campaign_failed")


@leads_router.post("/import/bulk", response_model=BulkResponse, response_model_exclude_none=True)
def import_leads(
    request: Request,
    dto: LeadImportRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> BulkResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:import")
        _check_body(ctx, dto)
        return lead_service.import_leads(db, ctx, dto.leads)
    except HTTPException as exc:
        return http_error(request, exc, "lead_import_failed")


@leads_router.post("/convert", response_model=LeadConvertResponse)
def convert_lead(
    request: Request,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> LeadConvertResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:update")
        _check_body(ctx, dto)
        return lead_service.convert_lead(db, ctx, dto)
    except HTTPException as exc:
        return http_error(request, exc, "lead_convert_failed")


@leads_router.get("/{lead_id}", response_model=LeadResponse)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> LeadResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:read")
        return LeadResponse(lead=lead_service.get_lead(db, ctx, lead_id))
    except HTTPException as exc:
        return http_error(request, exc, "lead_get_failed")


@leads_router.patch("/{lead_id}", response_model=LeadResponse)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> LeadResponse | JSONResponse:
    try:
        require_permission(ctx, "leads:update")
        _check_body(ctx, dto)
        return LeadResponse(lead=lead_service.update_lead(db, ctx, lead_id, dto))
    except HTTPException as exc:
        return http_error(request, exc, "lead_update_failed")


@leads_router.delete("/{lead_id}", response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "leads:delete")
        lead_service.delete_lead(db, ctx, lead_id)
    except HTTPException as exc:
        return http_error(request, exc, "lead_delete_failed")
    return {"success": True, "leadId": str(lead_id)}


@clients_router.get("", response_model=ClientListResponse)
def list_clients(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    q: str | None = None,
    cursor: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ClientListResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:read")
        clients, next_cursor = client_service.list_clients(db, ctx, {"status": status_filter, "q": q}, cursor, limit)
        return ClientListResponse(data=clients, next_cursor=next_cursor)
    except HTTPException as exc:
        return http_error(request, exc, "client_list_failed")


@clients_router.post("", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ClientResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:create")
        _check_body(ctx, dto)
        return ClientResponse(client=client_service.create_client(db, ctx, dto))
    except HTTPException as exc:
        return http_error(request, exc, "client_create_failed")


@clients_router.delete("/admin/bulk-delete", response_model=BulkResponse, response_model_exclude_none=True)
def bulk_delete_clients(
    request: Request,
    dto: ClientBulkDeleteRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> BulkResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:delete")
        _check_body(ctx, dto)
        return client_service.bulk_delete(db, ctx, dto.client_ids)
    except HTTPException as exc:
        return http_error(request, exc, "client_bulk_delete_failed")


@clients_router.post("/ai-profile/update", response_model=None)
def update_client_ai_profile(
    request: Request,
    dto: AIProfileUpdateRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "clients:update")
        _check_body(ctx, dto)
        client_id = parse_uuid(dto.client_id)
        if client_id is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Cliente con ID '{dto.client_id}' no encontrado")
        data = client_service.update_ai_profile(db, ctx, client_id, dto.ai_profile_updates)
    except HTTPException as exc:
        return http_error(request, exc, "client_ai_profile_update_failed")
    return {"success": True, "data": data, "message": "Perfil de IA actualizado exitosamente"}


@clients_router.get("/{client_id}", response_model=ClientResponse)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ClientResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:read")
        return ClientResponse(client=client_service.get_client(db, ctx, client_id))
    except HTTPException as exc:
        return http_error(request, exc, "client_get_failed")


@clients_router.patch("/{client_id}", response_model=ClientResponse)
def patch_client(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ClientResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:update")
        _check_body(ctx, dto)
        return ClientResponse(client=client_service.update_client(db, ctx, client_id, dto))
    except HTTPException as exc:
        return http_error(request, exc, "client_update_failed")


@clients_router.delete("/{client_id}", response_model=None)
def delete_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "clients:delete")
        client_service.delete_client(db, ctx, client_id)
    except HTTPException as exc:
        return http_error(request, exc, "client_delete_failed")
    return {"success": True, "clientId": str(client_id)}


@clients_router.post("/{client_id}/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
def add_client_payment(
    request: Request,
    client_id: uuid.UUID,
    dto: PaymentCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> PaymentResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:update")
        payment, remaining = client_service.add_payment(db, ctx, client_id, dto)
        return PaymentResponse(payment=payment, remaining_debt=remaining)
    except HTTPException as exc:
        return http_error(request, exc, "client_payment_failed")


@clients_router.get("/{client_id}/interactions", response_model=DocumentResponse)
def get_client_interactions(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> DocumentResponse | JSONResponse:
    try:
        require_permission(ctx, "clients:read")
        path, document = client_service.get_interactions(db, ctx, client_id)
        return DocumentResponse(path=path, data=document)
    except HTTPException as exc:
        return http_error(request, exc, "client_interactions_failed")


@campaigns_router.get("", response_model=CampaignListResponse)
def list_campaigns(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> CampaignListResponse | JSONResponse:
    try:
        require_permission(ctx, "campaigns:read")
        return CampaignListResponse(data=campaign_service.list_campaigns(db, ctx))
    except HTTPException as exc:
        return http_error(request, exc, "campaign_list_failed")


@campaigns_router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
def create_campaign(
    request: Request,
    dto: CampaignCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> CampaignResponse | JSONResponse:
    try:
        require_permission(ctx, "campaigns:manage")
        _check_body(ctx, dto)
        return CampaignResponse(campaign=campaign_service.create_campaign(db, ctx, dto))
    except HTTPException as exc:
        return http_error(request, exc, "campaign_create_failed")


@campaigns_router.get("/{campaign_id}", response_model=CampaignResponse)
def get_campaign(
    request: Request,
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> CampaignResponse | JSONResponse:
    try:
        require_permission(ctx, "campaigns:read")
        return CampaignResponse(campaign=campaign_service.get_campaign(db, ctx, campaign_id))
    except HTTPException as exc:
        return http_error(request, exc, "campaign_get_failed")


@campaigns_router.put("/{campaign_id}", response_model=CampaignResponse)
def update_campaign(
    request: Request,
    campaign_id: uuid.UUID,
    dto: CampaignUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> CampaignResponse | JSONResponse:
    try:
        require_permission(ctx, "campaigns:manage")
        _check_body(ctx, dto)
        return CampaignResponse(campaign=campaign_service.update_campaign(db, ctx, campaign_id, dto))
    except HTTPException as exc:
        return http_error(request, exc, "campaign_update_failed")


@campaigns_router.delete("/{campaign_id}", response_model=None)
def delete_campaign(
    request: Request,
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "campaigns:manage")
        unlinked = campaign_service.delete_campaign(db, ctx, campaign_id)
    except HTTPException as exc:
        return http_error(request, exc, "campaign_delete_failed")
    return {"success": True, "campaignId": str(campaign_id), "unlinkedLeads": unlinked}


@products_router.get("", response_model=ProductListResponse)
def list_products(
    request: Request,
    active: bool = False,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ProductListResponse | JSONResponse:
    try:
        require_permission(ctx, "products:read")
        return ProductListResponse(data=product_service.list_products(db, ctx, active_only=active))
    except HTTPException as exc:
        return http_error(request, exc, "product_list_failed")


@products_router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
def create_product(
    request: Request,
    dto: ProductCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ProductResponse | JSONResponse:
    try:
        require_permission(ctx, "products:manage")
        _check_body(ctx, dto)
        return ProductResponse(product=product_service.create_product(db, ctx, dto))
    except HTTPException as exc:
        return http_error(request, exc, "product_create_failed")


@products_router.get("/{product_id}", response_model=ProductResponse)
def get_product(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ProductResponse | JSONResponse:
    try:
        require_permission(ctx, "products:read")
        return ProductResponse(product=product_service.get_product(db, ctx, product_id))
    except HTTPException as exc:
        return http_error(request, exc, "product_get_failed")


@products_router.put("/{product_id}", response_model=ProductResponse)
def update_product(
    request: Request,
    product_id: uuid.UUID,
    dto: ProductUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> ProductResponse | JSONResponse:
    try:
        require_permission(ctx, "products:manage")
        _check_body(ctx, dto)
        return ProductResponse(product=product_service.update_product(db, ctx, product_id, dto))
    except HTTPException as exc:
        return http_error(request, exc, "product_update_failed")


@products_router.delete("/{product_id}", response_model=None)
def delete_product(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_principal),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "products:manage")
        product_service.delete_product(db, ctx, product_id)
    except HTTPException as exc:
        return http_error(request, exc, "product_delete_failed")
    return {"success": True, "productId": str(product_id)}
