from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from common.config import get_settings
from common.logging_setup import configure_logging

from .domain.errors import DownstreamUnavailable
from .endpoints import alerts_router, health_router, machines_router
from .pipeline import TelemetryPipeline, build_pipeline

logger = logging.getLogger(__name__)


def create_app(pipeline: Optional[TelemetryPipeline] = None, connect_mqtt: bool = True) -> FastAPI:
    """Build the HTTP app.

    Without an explicit pipeline one is built from the environment when the
    app starts, not at import time.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.pipeline is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            app.state.pipeline = build_pipeline(settings)

        if not app.state.pipeline.start(connect_mqtt=connect_mqtt):
            logger.warning("[MQTT] Receiver not connected; HTTP endpoints stay available")
        try:
            yield
        finally:
            app.state.pipeline.stop()

    app = FastAPI(title="Coffee Telemetry Ingest", version="0.1.0", lifespan=lifespan)
    app.state.pipeline = pipeline

    @app.exception_handler(DownstreamUnavailable)
    async def downstream_unavailable(request: Request, exc: DownstreamUnavailable):
        return JSONResponse(status_code=503, content={"detail": f"state store unavailable: {exc.operation}"})

    app.include_router(health_router)
    app.include_router(machines_router)
    app.include_router(alerts_router)
    return app


app = create_app()
