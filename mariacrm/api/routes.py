from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from mariacrm.core.auth import get_principal
from mariacrm.core.config import get_settings
from mariacrm.crm.api import campaigns_router, clients_router, leads_router, products_router
from mariacrm.integrations.api import agents_router, calls_router, lead_integrations_router, whatsapp_router
from mariacrm.metrics import generate_metrics_payload, metrics_content_type
from mariacrm.platform.security import AuthContext, require_permission
from mariacrm.tenancy.api import api_keys_router, auth_router, organizations_router, user_router

router = APIRouter()
router.include_router(auth_router)
router.include_router(user_router)
router.include_router(organizations_router)
router.include_router(api_keys_router)
router.include_router(lead_integrations_router)
router.include_router(leads_router)
router.include_router(clients_router)
router.include_router(campaigns_router)
router.include_router(products_router)
router.include_router(calls_router)
router.include_router(agents_router)
router.include_router(whatsapp_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(ctx: AuthContext = Depends(get_principal)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_permission(ctx, "system:metrics:read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
