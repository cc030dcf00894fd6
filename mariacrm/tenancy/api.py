from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mariacrm.api.errors import http_error
from mariacrm.core.auth import auth_service, api_key_service, extract_bearer_token, get_auth_context
from mariacrm.core.cache import UserContextCache, get_context_cache
from mariacrm.core.config import get_settings
from mariacrm.core.database import get_db
from mariacrm.core.security import TokenError, decode_context_token
from mariacrm.platform.security import AuthContext, require_permission
from mariacrm.tenancy.schemas import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyListResponse,
    ContextResponse,
    LoginRequest,
    LoginResponse,
    MemberAdd,
    MemberListResponse,
    OrganizationCreate,
    OrganizationListResponse,
    OrganizationResponse,
    RegisterRequest,
    SwitchOrganizationRequest,
    SwitchOrganizationResponse,
    TenantInfoResponse,
)
from mariacrm.tenancy.service import IssuedSession, OrganizationService

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
user_router = APIRouter(prefix="/api/user", tags=["auth"])
organizations_router = APIRouter(prefix="/api", tags=["tenancy.organizations"])
api_keys_router = APIRouter(prefix="/api/admin/api-keys", tags=["tenancy.api_keys"])
organization_service = OrganizationService()


def _set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.auth_cookie_name,
        token,
        max_age=settings.token_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.app_env.lower() in {"prod", "production"},
    )


def _login_payload(issued: IssuedSession) -> LoginResponse:
    return LoginResponse(
        token=issued.token,
        user=issued.context.user,
        tenant=issued.context.tenant,
        organization=issued.context.organization,
    )


@auth_router.post("/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    dto: LoginRequest,
    db: Session = Depends(get_db),
) -> LoginResponse | JSONResponse:
    try:
        issued = auth_service.login(db, dto)
    except HTTPException as exc:
        return http_error(request, exc, "auth_login_failed")
    _set_session_cookie(response, issued.token)
    return _login_payload(issued)


@auth_router.post("/register", response_model=LoginResponse, status_code=status.HTTP_201_CREATED)
def register(
    request: Request,
    response: Response,
    dto: RegisterRequest,
    db: Session = Depends(get_db),
) -> LoginResponse | JSONResponse:
    try:
        issued = auth_service.register(db, dto)
    except HTTPException as exc:
        return http_error(request, exc, "auth_register_failed")
    _set_session_cookie(response, issued.token)
    return _login_payload(issued)


@auth_router.post("/logout")
def logout(
    request: Request,
    response: Response,
    cache: UserContextCache = Depends(get_context_cache),
) -> dict[str, bool | str]:
    token = extract_bearer_token(request)
    if token:
        try:
            claims = decode_context_token(token)
        except TokenError:
            claims = {}
        user_id = claims.get("userId")
        if isinstance(user_id, str):
            cache.invalidate_user(user_id)
    response.delete_cookie(get_settings().auth_cookie_name)
    return {"success": True, "message": "Sesión cerrada"}


@auth_router.get("/context", response_model=ContextResponse)
def get_context(
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
) -> ContextResponse:
    resolved = request.state.resolved_context
    return ContextResponse(
        user=resolved.user,
        tenant=resolved.tenant,
        organization=resolved.organization,
        roles=resolved.roles,
    )


@user_router.put("/set-active-organization", response_model=SwitchOrganizationResponse)
def set_active_organization(
    request: Request,
    response: Response,
    dto: SwitchOrganizationRequest,
    db: Session = Depends(get_db),
    cache: UserContextCache = Depends(get_context_cache),
    ctx: AuthContext = Depends(get_auth_context),
) -> SwitchOrganizationResponse | JSONResponse:
    try:
        token = auth_service.switch_organization(db, ctx, dto.new_organization_id, cache)
    except HTTPException as exc:
        return http_error(request, exc, "auth_switch_organization_failed")
    _set_session_cookie(response, token)
    return SwitchOrganizationResponse(message="Organización activa actualizada", new_auth_token=token)


@organizations_router.get("/organizations", response_model=OrganizationListResponse)
def list_organizations(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrganizationListResponse:
    return OrganizationListResponse(organizations=organization_service.list_organizations(db, ctx))


@organizations_router.post("/organizations", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
def create_organization(
    request: Request,
    dto: OrganizationCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrganizationResponse | JSONResponse:
    try:
        require_permission(ctx, "organizations:manage")
        return OrganizationResponse(organization=organization_service.create_organization(db, ctx, dto))
    except HTTPException as exc:
        return http_error(request, exc, "organization_create_failed")


@organizations_router.get("/organizations/{organization_id}/members", response_model=MemberListResponse)
def list_members(
    request: Request,
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> MemberListResponse | JSONResponse:
    try:
        return MemberListResponse(members=organization_service.list_members(db, ctx, organization_id))
    except HTTPException as exc:
        return http_error(request, exc, "organization_members_failed")


@organizations_router.post(
    "/organizations/{organization_id}/members",
    response_model=None,
    status_code=status.HTTP_201_CREATED,
)
def add_member(
    request: Request,
    organization_id: uuid.UUID,
    dto: MemberAdd,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "organizations:manage")
        member = organization_service.add_member(db, ctx, organization_id, dto)
    except HTTPException as exc:
        return http_error(request, exc, "organization_member_add_failed")
    return {"success": True, "member": member.model_dump(mode="json", by_alias=True)}


@organizations_router.get("/tenant/info", response_model=TenantInfoResponse)
def tenant_info(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TenantInfoResponse | JSONResponse:
    try:
        return TenantInfoResponse(tenant=organization_service.tenant_info(db, ctx))
    except HTTPException as exc:
        return http_error(request, exc, "tenant_info_failed")


@api_keys_router.post("", response_model=ApiKeyCreated, status_code=status.HTTP_201_CREATED)
def create_api_key(
    request: Request,
    dto: ApiKeyCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ApiKeyCreated | JSONResponse:
    try:
        require_permission(ctx, "admin:api_keys")
        raw_key, key = api_key_service.create_key(db, ctx, dto)
    except HTTPException as exc:
        return http_error(request, exc, "api_key_create_failed")
    return ApiKeyCreated(api_key=raw_key, key=key)


@api_keys_router.get("", response_model=ApiKeyListResponse)
def list_api_keys(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ApiKeyListResponse | JSONResponse:
    try:
        require_permission(ctx, "admin:api_keys")
        return ApiKeyListResponse(keys=api_key_service.list_keys(db, ctx))
    except HTTPException as exc:
        return http_error(request, exc, "api_key_list_failed")


@api_keys_router.delete("/{key_id}", response_model=None)
def revoke_api_key(
    request: Request,
    key_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict | JSONResponse:
    try:
        require_permission(ctx, "admin:api_keys")
        key = api_key_service.revoke_key(db, ctx, key_id)
    except HTTPException as exc:
        return http_error(request, exc, "api_key_revoke_failed")
    return {"success": True, "key": key.model_dump(mode="json", by_alias=True)}
