from fastapi import APIRouter, Depends
from fastapi.responses import Response

from gophercrm.configuration.api import configurations_router
from gophercrm.core.config import get_settings
from gophercrm.core.errors import NotFoundError
from gophercrm.crm.api import customers_router, dashboard_router, leads_router, tasks_router, tickets_router
from gophercrm.identity.api import api_keys_router, auth_router, get_current_actor, users_router
from gophercrm.metrics import generate_metrics_payload, metrics_content_type
from gophercrm.platform.security.context import Actor
from gophercrm.platform.security.errors import ForbiddenError

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(api_keys_router)
router.include_router(leads_router)
router.include_router(customers_router)
router.include_router(tickets_router)
router.include_router(tasks_router)
router.include_router(dashboard_router)
router.include_router(configurations_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(actor: Actor = Depends(get_current_actor)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError()
    if not actor.is_admin:
        raise ForbiddenError("metrics are restricted to administrators")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
