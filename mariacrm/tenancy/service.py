from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mariacrm import audit
from mariacrm.core.cache import UserContextCache
from mariacrm.core.config import get_settings
from mariacrm.core.security import (
    create_context_token,
    generate_api_key,
    has_required_claims,
    hash_api_key,
    hash_password,
    verify_password,
)
from mariacrm.metrics import observe_api_key_rate_limited, observe_auth_failure
from mariacrm.middleware.rate_limit import RateDecision, get_rate_limiter
from mariacrm.platform.security import DEFAULT_API_KEY_PERMISSIONS, AuthContext
from mariacrm.tenancy.models import ApiKey, Organization, OrganizationMember, Tenant, User
from mariacrm.tenancy.schemas import (
    ApiKeyCreate,
    ApiKeyRead,
    MemberAdd,
    MemberRead,
    OrganizationCreate,
    OrganizationRead,
    RegisterRequest,
    TenantInfo,
    TenantRead,
    UserRead,
    LoginRequest,
)


logger = logging.getLogger("mariacrm.auth")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_uuid(value: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


@dataclass
class ResolvedContext:
    user: UserRead
    tenant: TenantRead
    organization: OrganizationRead
    roles: list[str] = field(default_factory=list)


@dataclass
class IssuedSession:
    token: str
    context: ResolvedContext


class AuthService:
    def login(self, session: Session, dto: LoginRequest) -> IssuedSession:
        tenant = session.scalar(select(Tenant).where(Tenant.slug == dto.tenant_identifier.strip().lower()))
        if tenant is None:
            observe_auth_failure("tenant_not_found")
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant no encontrado")

        user = session.scalar(select(User).where(User.email == str(dto.email).lower()))
        # users of other tenants must look exactly like unknown e-mails
        if user is None or not self._belongs_to_tenant(session, user, tenant):
            observe_auth_failure("user_not_found")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuario no encontrado")

        if not verify_password(dto.password, user.password_hash):
            observe_auth_failure("bad_password")
            logger.info("auth.login_failed", extra={"tenant_id": str(tenant.id), "reason": "bad_password"})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Contraseña incorrecta")

        organization = self._first_organization(session, tenant.id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

        roles = self._roles_for(session, user, tenant, organization)
        token = create_context_token(
            user_id=str(user.id),
            email=user.email,
            tenant_id=str(tenant.id),
            organization_id=str(organization.id),
            roles=roles,
        )
        logger.info(
            "auth.login",
            extra={"user_id": str(user.id), "tenant_id": str(tenant.id), "organization_id": str(organization.id)},
        )
        return IssuedSession(token=token, context=self._build_context(user, tenant, organization, roles))

    def register(self, session: Session, dto: RegisterRequest) -> IssuedSession:
        email = str(dto.email).lower()
        if session.scalar(select(User.id).where(User.email == email)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="El email ya está registrado")
        if session.scalar(select(Tenant.id).where(Tenant.slug == dto.tenant_slug)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="El slug del tenant ya existe")

        user = User(email=email, password_hash=hash_password(dto.password), display_name=dto.display_name)
        session.add(user)
        session.flush()
        tenant = Tenant(name=dto.tenant_name, slug=dto.tenant_slug, owner_id=user.id)
        session.add(tenant)
        session.flush()
        organization = Organization(
            tenant_id=tenant.id,
            name=dto.organization_name or dto.tenant_name,
            owner_id=user.id,
        )
        session.add(organization)
        session.flush()
        session.add(OrganizationMember(organization_id=organization.id, user_id=user.id, role="owner"))

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="registration conflict")

        audit.record(
            actor_id=str(user.id),
            tenant_id=str(tenant.id),
            entity_type="tenancy.tenant",
            entity_id=str(tenant.id),
            action="register",
            before=None,
            after={"slug": tenant.slug, "organization_id": str(organization.id)},
        )
        token = create_context_token(
            user_id=str(user.id),
            email=user.email,
            tenant_id=str(tenant.id),
            organization_id=str(organization.id),
            roles=["owner"],
        )
        return IssuedSession(token=token, context=self._build_context(user, tenant, organization, ["owner"]))

    def switch_organization(
        self,
        session: Session,
        ctx: AuthContext,
        new_organization_id: str | None,
        cache: UserContextCache,
    ) -> str:
        if not new_organization_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="newOrganizationId is required")

        target_id = _parse_uuid(new_organization_id)
        organization = None
        if target_id is not None:
            organization = session.scalar(
                select(Organization).where(
                    and_(Organization.id == target_id, Organization.tenant_id == ctx.tenant_id)
                )
            )
        if organization is None:
            observe_auth_failure("organization_switch_denied")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Organization not found or access denied",
            )

        cache.invalidate_user(ctx.user_id)
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type="tenancy.session",
            entity_id=ctx.user_id,
            action="switch_organization",
            before={"organization_id": str(ctx.organization_id)},
            after={"organization_id": str(organization.id)},
            correlation_id=ctx.correlation_id,
        )
        return create_context_token(
            user_id=ctx.user_id,
            email=ctx.email or "",
            tenant_id=str(ctx.tenant_id),
            organization_id=str(organization.id),
            roles=ctx.roles,
        )

    def resolve_context(self, session: Session, claims: dict[str, Any], cache: UserContextCache) -> ResolvedContext:
        if not has_required_claims(claims):
            observe_auth_failure("invalid_claims")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

        user_id = _parse_uuid(claims["userId"])
        tenant_id = _parse_uuid(claims["tenantId"])
        organization_id = _parse_uuid(claims["organizationId"])
        if user_id is None or tenant_id is None or organization_id is None:
            observe_auth_failure("invalid_claims")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

        roles = claims.get("roles")
        roles = [str(role) for role in roles] if isinstance(roles, list) else []
        cache_key = (str(user_id), str(tenant_id), str(organization_id))
        cached = cache.get(cache_key)
        if cached is not None:
            return ResolvedContext(user=cached.user, tenant=cached.tenant, organization=cached.organization, roles=roles)

        user = session.get(User, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User profile not found")
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
        organization = session.get(Organization, organization_id)
        if organization is None or organization.tenant_id != tenant.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")

        resolved = self._build_context(user, tenant, organization, roles)
        cache.set(cache_key, resolved)
        return resolved

    def _belongs_to_tenant(self, session: Session, user: User, tenant: Tenant) -> bool:
        if tenant.owner_id == user.id:
            return True
        membership = session.scalar(
            select(OrganizationMember.id)
            .join(Organization, Organization.id == OrganizationMember.organization_id)
            .where(and_(OrganizationMember.user_id == user.id, Organization.tenant_id == tenant.id))
            .limit(1)
        )
        return membership is not None

    def _first_organization(self, session: Session, tenant_id: uuid.UUID) -> Organization | None:
        return session.scalar(
            select(Organization)
            .where(Organization.tenant_id == tenant_id)
            .order_by(Organization.created_at.asc(), Organization.id.asc())
            .limit(1)
        )

    def _roles_for(self, session: Session, user: User, tenant: Tenant, organization: Organization) -> list[str]:
        if tenant.owner_id == user.id:
            return ["owner"]
        role = session.scalar(
            select(OrganizationMember.role).where(
                and_(OrganizationMember.user_id == user.id, OrganizationMember.organization_id == organization.id)
            )
        )
        return [role or "member"]

    def _build_context(
        self,
        user: User,
        tenant: Tenant,
        organization: Organization,
        roles: list[str],
    ) -> ResolvedContext:
        return ResolvedContext(
            user=UserRead.model_validate(user),
            tenant=TenantRead.model_validate(tenant),
            organization=OrganizationRead.model_validate(organization),
            roles=list(roles),
        )


class OrganizationService:
    entity_type = "tenancy.organization"

    def list_organizations(self, session: Session, ctx: AuthContext) -> list[OrganizationRead]:
        organizations = session.scalars(
            select(Organization)
            .where(Organization.tenant_id == ctx.tenant_id)
            .order_by(Organization.created_at.asc(), Organization.id.asc())
        ).all()
        return [OrganizationRead.model_validate(item) for item in organizations]

    def create_organization(self, session: Session, ctx: AuthContext, dto: OrganizationCreate) -> OrganizationRead:
        owner_id = uuid.UUID(ctx.user_id)
        organization = Organization(
            tenant_id=ctx.tenant_id,
            name=dto.name,
            description=dto.description,
            owner_id=owner_id,
        )
        session.add(organization)
        session.flush()
        session.add(OrganizationMember(organization_id=organization.id, user_id=owner_id, role="owner"))
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(organization.id),
            action="create",
            before=None,
            after={"name": organization.name},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(organization)
        return OrganizationRead.model_validate(organization)

    def list_members(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[MemberRead]:
        organization = self._get_in_tenant(session, ctx, organization_id)
        rows = session.execute(
            select(OrganizationMember, User)
            .join(User, User.id == OrganizationMember.user_id)
            .where(OrganizationMember.organization_id == organization.id)
            .order_by(OrganizationMember.created_at.asc())
        ).all()
        return [self._to_member_read(member, user) for member, user in rows]

    def add_member(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, dto: MemberAdd) -> MemberRead:
        organization = self._get_in_tenant(session, ctx, organization_id)
        user = session.scalar(select(User).where(User.email == str(dto.email).lower()))
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usuario no encontrado")

        existing = session.scalar(
            select(OrganizationMember).where(
                and_(OrganizationMember.organization_id == organization.id, OrganizationMember.user_id == user.id)
            )
        )
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="El usuario ya es miembro")

        member = OrganizationMember(organization_id=organization.id, user_id=user.id, role=dto.role)
        session.add(member)
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type="tenancy.member",
            entity_id=str(user.id),
            action="add",
            before=None,
            after={"organization_id": str(organization.id), "role": dto.role},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(member)
        return self._to_member_read(member, user)

    def tenant_info(self, session: Session, ctx: AuthContext) -> TenantInfo:
        tenant = session.get(Tenant, ctx.tenant_id)
        if tenant is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
        return TenantInfo(
            id=tenant.id,
            name=tenant.name,
            slug=tenant.slug,
            plan=tenant.plan,
            organization_count=len(tenant.organizations),
            created_at=tenant.created_at,
        )

    def _get_in_tenant(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> Organization:
        organization = session.scalar(
            select(Organization).where(
                and_(Organization.id == organization_id, Organization.tenant_id == ctx.tenant_id)
            )
        )
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
        return organization

    def _to_member_read(self, member: OrganizationMember, user: User) -> MemberRead:
        return MemberRead(
            user_id=user.id,
            email=user.email,
            display_name=user.display_name,
            role=member.role,
            created_at=member.created_at,
        )


@dataclass
class ApiKeyAuthentication:
    key: ApiKey
    decision: RateDecision


def rate_limit_headers(decision: RateDecision | None) -> dict[str, str]:
    if decision is None:
        return {}
    return {
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }


class ApiKeyService:
    entity_type = "tenancy.api_key"

    def create_key(self, session: Session, ctx: AuthContext, dto: ApiKeyCreate) -> tuple[str, ApiKeyRead]:
        settings = get_settings()
        raw_key = generate_api_key()
        expires_at = utcnow() + timedelta(days=dto.expires_in_days) if dto.expires_in_days else None
        key = ApiKey(
            tenant_id=ctx.tenant_id,
            organization_id=ctx.organization_id,
            name=dto.name,
            key_hash=hash_api_key(raw_key),
            key_prefix=raw_key[:10],
            permissions=list(dto.permissions or DEFAULT_API_KEY_PERMISSIONS),
            rate_limit=dto.rate_limit or settings.api_key_default_rate_limit,
            expires_at=expires_at,
            created_by=_parse_uuid(ctx.user_id),
        )
        session.add(key)
        session.flush()
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(key.id),
            action="create",
            before=None,
            after={"name": key.name, "permissions": key.permissions},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(key)
        return raw_key, ApiKeyRead.model_validate(key)

    def list_keys(self, session: Session, ctx: AuthContext) -> list[ApiKeyRead]:
        keys = session.scalars(
            select(ApiKey)
            .where(and_(ApiKey.tenant_id == ctx.tenant_id, ApiKey.organization_id == ctx.organization_id))
            .order_by(ApiKey.created_at.desc())
        ).all()
        return [ApiKeyRead.model_validate(item) for item in keys]

    def revoke_key(self, session: Session, ctx: AuthContext, key_id: uuid.UUID) -> ApiKeyRead:
        key = session.scalar(
            select(ApiKey).where(
                and_(
                    ApiKey.id == key_id,
                    ApiKey.tenant_id == ctx.tenant_id,
                    ApiKey.organization_id == ctx.organization_id,
                )
            )
        )
        if key is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
        key.is_active = False
        audit.record(
            actor_id=ctx.user_id,
            tenant_id=str(ctx.tenant_id),
            entity_type=self.entity_type,
            entity_id=str(key.id),
            action="revoke",
            before={"is_active": True},
            after={"is_active": False},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(key)
        return ApiKeyRead.model_validate(key)

    def authenticate(self, session: Session, raw_key: str) -> ApiKeyAuthentication:
        key = session.scalar(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key)))
        if key is None or not key.is_active:
            observe_auth_failure("invalid_api_key")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

        expires_at = as_aware(key.expires_at)
        if expires_at is not None and expires_at <= utcnow():
            observe_auth_failure("expired_api_key")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key expired")

        decision = get_rate_limiter().take(
            subject=f"api_key:{key.id}",
            route_group="api_key",
            capacity=key.rate_limit,
            window_seconds=get_settings().api_key_rate_limit_window_seconds,
        )
        if not decision.allowed:
            observe_api_key_rate_limited()
            logger.info("auth.api_key_rate_limited", extra={"api_key_id": str(key.id), "tenant_id": str(key.tenant_id)})
            headers = rate_limit_headers(decision)
            headers["Retry-After"] = str(decision.retry_after)
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded", headers=headers)

        key.last_used_at = utcnow()
        session.commit()
        return ApiKeyAuthentication(key=key, decision=decision)
