from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config import settings
from fulfillment.api.v1.router import api_router
from fulfillment.core.exceptions import FulfillmentError, status_code_for
from fulfillment.database import init_db, async_session_factory


logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create missing tables when running on SQLite (local dev).
    PostgreSQL deployments are migrated with alembic.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    if settings.DATABASE_URL.startswith("sqlite"):
        await init_db()

    yield

    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Orders", "description": "Order approval, status advancement and rejection"},
    {"name": "Payments", "description": "Payment method selection, proof of payment review"},
    {"name": "Deliveries", "description": "Delivery status, driver and vehicle assignment, cancellation"},
    {"name": "Fleet", "description": "Vehicle registry and availability"},
    {"name": "Notifications", "description": "In-app notification inbox"},
]


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(api_router, prefix=settings.API_V1_PREFIX)


def _with_cors_headers(request: Request, response: JSONResponse) -> JSONResponse:
    # Responses from exception handlers skip the CORS middleware
    origin = request.headers.get("origin", "")
    if origin and (origin in settings.cors_origins_list or "*" in settings.cors_origins_list):
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    """Service errors not already translated by an endpoint."""
    logger.warning(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    response = JSONResponse(status_code=status_code_for(exc), content={"detail": exc.to_dict()})
    return _with_cors_headers(request, response)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled errors become a 500; the message is only exposed in DEBUG."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    detail = str(exc) if settings.DEBUG else "Internal server error"
    response = JSONResponse(
        status_code=500,
        content={"detail": {"kind": "InternalError", "message": detail, "details": {}}},
    )
    return _with_cors_headers(request, response)


@app.get("/health", tags=["Health"])
async def health_check():
    """Database reachability plus which notification transports are configured."""
    checks = {
        "database": "connected",
        "sms": "configured" if settings.sms_enabled else "disabled",
        "email": "configured" if settings.smtp_enabled else "disabled",
    }
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        checks["database"] = f"error: {e}"

    body = {
        "status": "healthy" if checks["database"] == "connected" else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    if body["status"] != "healthy":
        return JSONResponse(status_code=503, content=body)
    return body
