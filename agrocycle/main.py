from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from agrocycle.config import settings
from agrocycle.api.v1.router import api_router
from agrocycle.core.exceptions import OrderEngineError, InvalidSignatureError, InternalError
from agrocycle.database import init_db, async_session_factory


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables that do not exist yet
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    yield

    # Shutdown
    logger.info("Shutting down...")


API_DESCRIPTION = """
## AgroCycle Order Engine

Buyer orders for biomass from collection hubs: payment through Razorpay,
hub fulfillment (allocation, quality certification, dispatch) and
delivery acceptance.

- **API Docs**: /docs (Swagger UI)
- **Health Check**: /health
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _error_response(request: Request, status_code: int, exc: Exception, message, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": message,
            "type": type(exc).__name__,
            "details": details or {},
            "path": str(request.url.path),
            "method": request.method,
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


@app.exception_handler(OrderEngineError)
async def order_engine_exception_handler(request: Request, exc: OrderEngineError):
    """Map service errors onto their HTTP status."""
    if isinstance(exc, InvalidSignatureError):
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return _error_response(request, exc.status_code, exc, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are reported as 400 like any other validation failure."""
    return _error_response(
        request, 400, exc, "Invalid request",
        {"errors": jsonable_errors(exc)},
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """The store is unavailable or misbehaving; the caller may retry."""
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    error = InternalError("Service temporarily unavailable")
    return _error_response(request, error.status_code, error, error.message)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except (SQLAlchemyError, OSError) as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
