"""
FastAPI application entry point for the policy portal backend.
"""

from __future__ import annotations

from fastapi import FastAPI

from policy_portal.config import get_settings
from policy_portal.routes import router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Policy Portal Backend (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
