from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadflow.core.auth import AuthUser, get_current_user
from leadflow.core.config import get_settings
from leadflow.crm.api import activities_router, leads_router, tasks_router
from leadflow.metrics import generate_metrics_payload, metrics_content_type
from leadflow.workflows.api import executions_router, workflows_router

router = APIRouter()
router.include_router(leads_router)
router.include_router(activities_router)
router.include_router(tasks_router)
router.include_router(workflows_router)
router.include_router(executions_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "workflows_enabled": settings.workflows_enabled,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
