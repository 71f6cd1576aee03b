from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import logging

from taskinn.core.config import settings
from taskinn.core.exceptions import DuplicateSettlement, LedgerError
from taskinn.api.v1.api import api_router
from taskinn.db.database import Database, create_redis_client
from taskinn.schemas.base import BaseResponse
from taskinn.services.coinpayments import CoinPaymentsClient
from taskinn.services.ledger import LedgerService
from taskinn.services.paypal import PayPalClient
from datetime import datetime, timezone

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="TaskInn API - Wallet ledger and commission settlement",
    openapi_url=f"{settings.API_V1_STR}/openapi.json" if settings.DEBUG else None,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.parsed_cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.parsed_allowed_hosts,
)


# Add timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


# Exception handlers
@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    if isinstance(exc, DuplicateSettlement):
        # Replays are answered with the original outcome
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": True,
                "data": jsonable_encoder(exc.result),
                "message": exc.message,
                "status_code": exc.status_code,
                "timestamp": time.time(),
                "path": request.url.path
            },
        )

    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")

    body = BaseResponse.error_response(exc.code, exc.message, exc.details)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            **jsonable_encoder(body, exclude={"data"}),
            "retryable": exc.retryable,
            "status_code": exc.status_code,
            "timestamp": time.time(),
            "path": request.url.path
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "detail": exc.detail,
            "status_code": exc.status_code,
            "timestamp": time.time(),
            "path": request.url.path
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "detail": "Validation error",
            "errors": jsonable_encoder(exc.errors()),
            "status_code": status.HTTP_422_UNPROCESSABLE_ENTITY,
            "timestamp": time.time(),
            "path": request.url.path
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "detail": "Internal server error" if not settings.DEBUG else str(exc),
            "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR,
            "timestamp": time.time(),
            "path": request.url.path
        },
    )


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    logger.info("Starting up TaskInn Ledger API...")
    state = app.state
    if getattr(state, "database", None) is None:
        state.database = Database.from_settings(settings)
        logger.info(f"Database engine created ({state.database.dialect_name})")
    if getattr(state, "redis", None) is None:
        state.redis = create_redis_client(settings.REDIS_URL)
    if getattr(state, "ledger", None) is None:
        state.ledger = LedgerService(
            state.database,
            default_commission_rate=settings.DEFAULT_COMMISSION_RATE,
            minimum_amount=settings.MINIMUM_TRANSACTION_AMOUNT,
            maximum_amount=settings.MAXIMUM_TRANSACTION_AMOUNT,
        )
    if getattr(state, "paypal", None) is None:
        state.paypal = PayPalClient.from_settings(settings)
    if getattr(state, "coinpayments", None) is None:
        state.coinpayments = CoinPaymentsClient.from_settings(settings)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down TaskInn Ledger API...")
    database = getattr(app.state, "database", None)
    if database is not None:
        await database.dispose()
        logger.info("Database connections closed")
    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        await redis_client.close()


# Health check endpoints
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "TaskInn Ledger API",
        "version": "1.0.0",
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0"
    }


@app.get("/health/db")
async def database_health_check(request: Request):
    """Database health check"""
    try:
        async with request.app.state.database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e) if settings.DEBUG else "Database connection failed",
                "timestamp": time.time()
            }
        )


@app.get("/health/redis")
async def redis_health_check(request: Request):
    """Redis health check"""
    try:
        redis_client = getattr(request.app.state, "redis", None)
        if redis_client is None:
            raise RuntimeError("Redis client not configured")
        await redis_client.ping()
        return {
            "status": "healthy",
            "redis": "connected",
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "redis": "disconnected",
                "error": str(e) if settings.DEBUG else "Redis connection failed",
                "timestamp": time.time()
            }
        )


# Include API router
app.include_router(api_router, prefix=settings.API_V1_STR)
