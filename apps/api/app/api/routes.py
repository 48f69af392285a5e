from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from app.api.deps import get_current_actor
from app.api.errors import error_response
from app.core.config import get_settings
from app.core.rbac import Capability, role_grants
from app.crm.api import dashboard_router, leads_router, opportunities_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security import AuthContext
from app.users.api import auth_router, users_router

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(leads_router)
router.include_router(opportunities_router)
router.include_router(dashboard_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(request: Request, ctx: AuthContext = Depends(get_current_actor)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        return error_response(request, status_code=404, code="not_found", message="not found")
    if not role_grants(ctx.role, Capability.MANAGE_USERS):
        return error_response(request, status_code=403, code="forbidden", message="metrics require the admin role")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
