from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import Field

from mariacrm.core.schemas import ApiModel, BulkItemResult, BulkSummary, Money


class ScopedBody(ApiModel):
    tenant_id: str | None = None
    organization_id: str | None = None


class CampaignSummary(ApiModel):
    id: uuid.UUID
    name: str
    status: str


class LeadFields(ScopedBody):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    company: str | None = None
    position: str | None = None
    national_id: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    status: str | None = None
    source: str | None = None
    priority: str | None = None
    interest_level: int | None = Field(default=None, ge=0, le=5)
    conversion_value: Money | None = None
    notes: str | None = None
    qualification_notes: str | None = None
    internal_notes: str | None = None
    tags: list[str] | None = None
    campaign_id: str | None = None
    assigned_agent_id: str | None = None
    assigned_agent_name: str | None = None
    next_follow_up_date: datetime | None = None


class LeadCreate(LeadFields):
    pass


class LeadUpdate(LeadFields):
    qualification_score: int | None = Field(default=None, ge=0, le=100)
    is_qualified: bool | None = None


class LeadRead(ApiModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    phone: str
    email: str | None
    company: str | None
    position: str | None
    national_id: str | None
    address: str | None
    city: str | None
    country: str
    status: str
    source: str
    priority: str
    qualification_score: int
    is_qualified: bool
    interest_level: int | None
    contact_attempts: int
    last_contact_date: datetime | None
    next_follow_up_date: datetime | None
    converted_to_client: bool
    conversion_date: datetime | None
    conversion_value: Money | None
    client_id: uuid.UUID | None
    notes: str | None
    qualification_notes: str | None
    internal_notes: str | None
    tags: list[str]
    campaign_id: uuid.UUID | None
    campaign: CampaignSummary | None = None
    assigned_agent_id: str | None
    assigned_agent_name: str | None
    created_at: datetime
    updated_at: datetime


class LeadResponse(ApiModel):
    success: bool = True
    lead: LeadRead


class LeadMapResponse(ApiModel):
    success: bool = True
    data: dict[str, LeadRead]
    path: str


class LeadListResponse(ApiModel):
    success: bool = True
    data: list[LeadRead]
    next_cursor: str | None = None


class LeadStats(ApiModel):
    total: int
    by_status: dict[str, int]
    by_source: dict[str, int]
    by_priority: dict[str, int]
    qualified: int
    converted: int
    conversion_rate: float
    average_score: float


class LeadStatsResponse(ApiModel):
    success: bool = True
    stats: LeadStats


class StatusUpdateRequest(ScopedBody):
    lead_id: str
    new_status: str
    notes: str | None = None


class StatusChange(ApiModel):
    from_status: str = Field(serialization_alias="from")
    to_status: str = Field(serialization_alias="to")
    timestamp: datetime
    notes: str | None = None


class StatusUpdateResponse(ApiModel):
    success: bool = True
    data: LeadRead
    status_change: StatusChange | None = None
    message: str


class LeadBulkDeleteRequest(ScopedBody):
    lead_ids: list[str] = Field(default_factory=list)


class LeadBulkUpdates(ApiModel):
    status: str | None = None
    priority: str | None = None
    assigned_agent_id: str | None = None
    assigned_agent_name: str | None = None
    campaign_id: str | None = None
    notes: str | None = None
    tags: list[str] | None = None


class LeadBulkUpdateRequest(ScopedBody):
    lead_ids: list[str] = Field(default_factory=list)
    updates: LeadBulkUpdates


class BulkAssignCampaignRequest(ScopedBody):
    lead_ids: list[str] = Field(default_factory=list)
    campaign_id: str


class LeadImportRequest(ScopedBody):
    leads: list[dict[str, Any]] = Field(default_factory=list)


class BulkResponse(ApiModel):
    success: bool = True
    results: list[BulkItemResult]
    summary: BulkSummary


class BulkAssignCampaignResponse(BulkResponse):
    updated_leads_count: int
    campaign_id: str
    campaign_name: str


class LeadConvertRequest(ScopedBody):
    lead_id: str
    create_client_record: bool = True
    conversion_value: Money | None = Field(default=None, ge=0)
    notes: str | None = None


class LeadConvertResponse(ApiModel):
    success: bool = True
    lead: LeadRead
    client_id: uuid.UUID | None = None
    message: str


class ClientFields(ScopedBody):
    name: str | None = None
    national_id: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    debt: Money | None = Field(default=None, ge=0)
    status: str | None = None
    loan_letter: str | None = None
    employer: str | None = None
    position: str | None = None
    credit_score: int | None = None
    risk_category: str | None = None
    credit_limit: Money | None = None
    available_credit: Money | None = None
    recovery_probability: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    internal_notes: str | None = None
    tags: list[str] | None = None


class ClientCreate(ClientFields):
    pass


class ClientUpdate(ClientFields):
    pass


class PaymentCreate(ApiModel):
    amount: Money = Field(gt=0)
    paid_at: datetime | None = None
    method: str | None = None
    reference: str | None = None


class PaymentRead(ApiModel):
    id: uuid.UUID
    client_id: uuid.UUID
    amount: Money
    paid_at: datetime
    method: str | None
    reference: str | None


class ClientRead(ApiModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    national_id: str | None
    phone: str
    email: str | None
    address: str | None
    city: str | None
    country: str
    debt: Money
    status: str
    loan_letter: str | None
    employer: str | None
    position: str | None
    credit_score: int | None
    risk_category: str | None
    credit_limit: Money | None
    available_credit: Money | None
    recovery_probability: int | None
    notes: str | None
    internal_notes: str | None
    tags: list[str]
    lead_id: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class ClientDetail(ClientRead):
    payments: list[PaymentRead] = Field(default_factory=list)


class ClientResponse(ApiModel):
    success: bool = True
    client: ClientDetail


class ClientListResponse(ApiModel):
    success: bool = True
    data: list[ClientRead]
    next_cursor: str | None = None


class ClientBulkDeleteRequest(ScopedBody):
    client_ids: list[str] = Field(default_factory=list)


class PaymentResponse(ApiModel):
    success: bool = True
    payment: PaymentRead
    remaining_debt: Money


class AIProfileUpdateRequest(ScopedBody):
    client_id: str
    ai_profile_updates: dict[str, Any]


class DocumentResponse(ApiModel):
    success: bool = True
    path: str
    data: dict[str, Any]


class ProductCreate(ScopedBody):
    name: str = Field(min_length=1)
    description: str | None = None
    price: Money | None = Field(default=None, ge=0)
    sku: str | None = None
    is_active: bool = True


class ProductUpdate(ScopedBody):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    price: Money | None = Field(default=None, ge=0)
    sku: str | None = None
    is_active: bool | None = None


class ProductRead(ApiModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    description: str | None
    price: Money | None
    sku: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ProductResponse(ApiModel):
    success: bool = True
    product: ProductRead


class ProductListResponse(ApiModel):
    success: bool = True
    data: list[ProductRead]


class CampaignCreate(ScopedBody):
    name: str = Field(min_length=1)
    description: str | None = None
    status: str = "draft"
    budget: Money | None = Field(default=None, ge=0)
    start_date: date | None = None
    end_date: date | None = None
    product_ids: list[str] = Field(default_factory=list)


class CampaignUpdate(ScopedBody):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: str | None = None
    budget: Money | None = Field(default=None, ge=0)
    start_date: date | None = None
    end_date: date | None = None
    product_ids: list[str] | None = None


class CampaignRead(ApiModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    description: str | None
    status: str
    budget: Money | None
    start_date: date | None
    end_date: date | None
    products: list[ProductRead] = Field(default_factory=list)
    lead_count: int = 0
    created_at: datetime
    updated_at: datetime


class CampaignResponse(ApiModel):
    success: bool = True
    campaign: CampaignRead


class CampaignListResponse(ApiModel):
    success: bool = True
    data: list[CampaignRead]
