from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import EmailStr, Field

from mariacrm.core.schemas import ApiModel


MemberRole = Literal["owner", "admin", "member"]


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1)
    tenant_identifier: str = Field(min_length=1)


class RegisterRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=8)
    display_name: str | None = None
    tenant_name: str = Field(min_length=1)
    tenant_slug: str = Field(min_length=2, max_length=128, pattern=r"^[a-z0-9][a-z0-9-]*$")
    organization_name: str | None = None


class UserRead(ApiModel):
    id: UUID
    email: str
    display_name: str | None


class TenantRead(ApiModel):
    id: UUID
    name: str
    slug: str
    plan: str


class OrganizationRead(ApiModel):
    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    owner_id: UUID
    created_at: datetime


class LoginResponse(ApiModel):
    success: bool = True
    token: str
    user: UserRead
    tenant: TenantRead
    organization: OrganizationRead


class ContextResponse(ApiModel):
    success: bool = True
    user: UserRead
    tenant: TenantRead
    organization: OrganizationRead
    roles: list[str]


class SwitchOrganizationRequest(ApiModel):
    new_organization_id: str | None = None


class SwitchOrganizationResponse(ApiModel):
    success: bool = True
    message: str
    new_auth_token: str


class OrganizationCreate(ApiModel):
    name: str = Field(min_length=1)
    description: str | None = None


class OrganizationListResponse(ApiModel):
    success: bool = True
    organizations: list[OrganizationRead]


class OrganizationResponse(ApiModel):
    success: bool = True
    organization: OrganizationRead


class MemberAdd(ApiModel):
    email: EmailStr
    role: MemberRole = "member"


class MemberRead(ApiModel):
    user_id: UUID
    email: str
    display_name: str | None
    role: str
    created_at: datetime


class MemberListResponse(ApiModel):
    success: bool = True
    members: list[MemberRead]


class TenantInfo(TenantRead):
    organization_count: int
    created_at: datetime


class TenantInfoResponse(ApiModel):
    success: bool = True
    tenant: TenantInfo


class ApiKeyCreate(ApiModel):
    name: str = Field(min_length=1)
    permissions: list[str] | None = None
    rate_limit: int | None = Field(default=None, ge=1)
    expires_in_days: int | None = Field(default=None, ge=1)


class ApiKeyRead(ApiModel):
    id: UUID
    name: str
    key_prefix: str
    permissions: list[str]
    rate_limit: int
    is_active: bool
    expires_at: datetime | None
    last_used_at: datetime | None
    created_at: datetime


class ApiKeyCreated(ApiModel):
    success: bool = True
    api_key: str
    key: ApiKeyRead


class ApiKeyListResponse(ApiModel):
    success: bool = True
    keys: list[ApiKeyRead]
