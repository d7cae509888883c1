from __future__ import annotations

from fastapi import Request

from ..pipeline import TelemetryPipeline


def get_pipeline(request: Request) -> TelemetryPipeline:
    return request.app.state.pipeline
