"""
Hamm back-office integration API - FastAPI Backend
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi import status
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn
import logging

from routes.api import register_routes
from backoffice.database import engine, Base
from backoffice.config import settings
from backoffice.services.exceptions import IntegrationError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Hamm Back-office Integration API",
    description="Legacy ERP and Specialized B2B integration",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,  # Disable docs in production
    redoc_url="/redoc" if settings.IS_DEVELOPMENT else None,
)

logger.info("Starting back-office integration API")
logger.info("Environment: %s (production=%s)", settings.ENV, settings.IS_PRODUCTION)

# Startup config validation (warn only)
if not settings.ERP_USERNAME or not settings.ERP_PASSWORD:
    logger.warning("ERP_USERNAME/ERP_PASSWORD not set; ERP routes use stored credentials or answer 503")
if not settings.B2B_USERNAME or not settings.B2B_PASSWORD:
    logger.warning("SPEC_B2B_USERNAME/SPEC_B2B_PASSWORD not set; B2B routes use stored credentials or answer 503")
if settings.IS_PRODUCTION and settings.ENCRYPTION_KEY == "your-32-character-encryption-key!!":
    logger.warning("ENCRYPTION_KEY is the default in production. Set a strong ENCRYPTION_KEY in environment.")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(IntegrationError)
async def integration_exception_handler(request: Request, exc: IntegrationError):
    """Domain errors from the ERP / B2B services carry their own status code"""
    logger.warning("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()}")
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "header"))
        message = f"Validation error: {field}: {first.get('msg')}" if field else f"Validation error: {first.get('msg')}"
    else:
        message = "Validation error: Please check your request format"
    return _error(status.HTTP_400_BAD_REQUEST, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled errors: logged with traceback, returned as a message only"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        str(exc) if settings.IS_DEVELOPMENT else "Internal server error",
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
logger.info(f"CORS configured for {len(settings.ALLOWED_ORIGINS)} origin(s)")

# Register all API routes (prefix /api)
register_routes(app, settings)


@app.get("/health")
async def health():
    """Health check endpoint. Includes DB connectivity check."""
    db_status = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "service": "api",
        "db": db_status,
        "environment": settings.ENV,
        "production": settings.IS_PRODUCTION,
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,  # Auto-reload only in development
        log_level=settings.LOG_LEVEL.lower()
    )
