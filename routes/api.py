"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from backoffice.http.controllers import erp, specialized

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = settings.API_PREFIX
    app.include_router(erp.router, prefix=f"{prefix}/erp", tags=["erp"])
    app.include_router(specialized.router, prefix=f"{prefix}/specialized", tags=["specialized"])
    logger.info("Registered routers under %s: erp, specialized", prefix)
