"""FastAPI application for the MarketiQ analysis backend."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .app.middleware import RequestIdMiddleware
from .app.routers.analysis import router as analysis_router
from .config import get_settings
from .logging_setup import setup_logging
from .services.analysis import AnalysisService
from .telemetry import prometheus_response

logger = logging.getLogger(__name__)


def create_app(service: AnalysisService | None = None) -> FastAPI:
    """Build the app; ``service`` is created from settings at startup when omitted."""

    app = FastAPI(
        title="MarketiQ Analysis Backend",
        description="Market analysis with provider fallback, zone validation and per-user quotas.",
        version=__version__,
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.analysis_service = service
    app.include_router(analysis_router)

    @app.on_event("startup")
    async def _startup() -> None:
        settings = get_settings() if app.state.analysis_service is None else app.state.analysis_service.settings
        setup_logging(settings.log_level)
        if app.state.analysis_service is None:
            app.state.analysis_service = AnalysisService.from_settings(settings)
        logger.info(
            "analysis_service_ready market_order=%s text_order=%s store=%s",
            ",".join(settings.market_data_provider_order),
            ",".join(settings.text_provider_order),
            type(app.state.analysis_service.store).__name__,
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        service_ = app.state.analysis_service
        if service_ is None:
            return
        try:
            await service_.close()
        except Exception:  # pragma: no cover
            logger.exception("analysis_service_close_failed")

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        payload, content_type = prometheus_response()
        return Response(content=payload, media_type=content_type)

    return app


app = create_app()

__all__ = ["app", "create_app"]
