from fastapi import APIRouter, Depends

from app.api import deps
from app.api.v1 import batches, collections, health
from app.schemas.common import ErrorEnvelope

api_router = APIRouter()

_http_deps = [Depends(deps.rate_limit)]

# Every EarthxException renders as the same envelope; document it once per router.
_error_responses = {
    code: {"model": ErrorEnvelope} for code in (400, 401, 403, 404, 409, 422, 429, 503)
}

api_router.include_router(
    collections.router,
    prefix="/collection",
    tags=["Collections"],
    dependencies=_http_deps,
    responses=_error_responses,
)
api_router.include_router(
    batches.router,
    prefix="/batch",
    tags=["Batches"],
    dependencies=_http_deps,
    responses=_error_responses,
)
api_router.include_router(health.router, tags=["Health"], dependencies=_http_deps)
