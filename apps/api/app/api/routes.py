from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.metrics import generate_metrics_payload, metrics_content_type
from app.crm.api import (
    activities_router,
    assignment_router,
    leads_router,
    messages_router,
    notes_router,
    pipeline_router,
    settings_router,
    templates_router,
)
from app.crm.service import load_stage_catalog

router = APIRouter()
router.include_router(leads_router)
router.include_router(pipeline_router)
router.include_router(activities_router)
router.include_router(notes_router)
router.include_router(assignment_router)
router.include_router(settings_router)
router.include_router(messages_router)
router.include_router(templates_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/health/ready", tags=["system"])
def readiness(db: Session = Depends(get_db)) -> JSONResponse:
    catalog = load_stage_catalog(db)
    checks = {
        "stages": len(catalog.board_stages()) > 0,
        "won_stage": catalog.won_stage() is not None,
    }
    ready = all(checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "name": user.name,
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
