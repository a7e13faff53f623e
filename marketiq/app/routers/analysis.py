"""Analysis and quota endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ...errors import GENERATION_UNAVAILABLE, INTERNAL, MARKET_DATA_UNAVAILABLE, QUOTA_EXCEEDED, AnalysisError
from ...schemas import AnalyzeRequest, AnalyzeResponse, ImageAnalyzeRequest, QuotaStatus
from ...services.analysis import AnalysisService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["analysis"])

STATUS_BY_CODE = {
    QUOTA_EXCEEDED: 429,
    MARKET_DATA_UNAVAILABLE: 503,
    GENERATION_UNAVAILABLE: 503,
    INTERNAL: 500,
}


def get_service(request: Request) -> AnalysisService:
    service = getattr(request.app.state, "analysis_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Analysis service not initialised")
    return service


async def require_api_key(
    service: AnalysisService = Depends(get_service),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    """Enforce ``BACKEND_API_KEY`` as a bearer token when it is configured."""

    expected = service.settings.backend_api_key
    if not expected:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if authorization.split(" ", 1)[1] != expected:
        raise HTTPException(status_code=401, detail="Invalid bearer token")


def _http_error(service: AnalysisService, exc: AnalysisError, user_id: str) -> HTTPException:
    body = service.error_body(exc, user_id=user_id)
    return HTTPException(status_code=STATUS_BY_CODE.get(exc.code, 500), detail=body.model_dump(exclude_none=True))


@router.post("/analyze", response_model=AnalyzeResponse, dependencies=[Depends(require_api_key)])
async def analyze(payload: AnalyzeRequest, service: AnalysisService = Depends(get_service)) -> AnalyzeResponse:
    try:
        return await service.analyze(payload)
    except AnalysisError as exc:
        raise _http_error(service, exc, payload.user_id) from exc


@router.post("/analyze/image", response_model=AnalyzeResponse, dependencies=[Depends(require_api_key)])
async def analyze_image(payload: ImageAnalyzeRequest, service: AnalysisService = Depends(get_service)) -> AnalyzeResponse:
    try:
        return await service.analyze_image(payload)
    except AnalysisError as exc:
        raise _http_error(service, exc, payload.user_id) from exc


@router.get("/quota/{user_id}", response_model=QuotaStatus, dependencies=[Depends(require_api_key)])
async def quota_status(user_id: str, service: AnalysisService = Depends(get_service)) -> QuotaStatus:
    return await service.quota_status(user_id)


__all__ = ["STATUS_BY_CODE", "get_service", "require_api_key", "router"]
