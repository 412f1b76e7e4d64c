from fastapi import APIRouter, Depends
from fastapi.responses import Response

from dealflow.core.config import get_settings
from dealflow.metrics import generate_metrics_payload, metrics_content_type
from dealflow.pipeline.access import Identity, Role
from dealflow.pipeline.api import deals_router, get_identity, stages_router
from dealflow.pipeline.errors import Forbidden, NotFound, Unauthenticated

router = APIRouter()
router.include_router(stages_router)
router.include_router(deals_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(identity: Identity | None = Depends(get_identity)) -> dict[str, str]:
    if identity is None:
        raise Unauthenticated()
    return {
        "user_id": identity.user_id,
        "role": identity.role.value,
    }


@router.get("/metrics", tags=["system"])
def metrics(identity: Identity | None = Depends(get_identity)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFound("not found")
    if identity is None:
        raise Unauthenticated()
    if identity.role is not Role.ADMIN:
        raise Forbidden("metrics are restricted to admins")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
