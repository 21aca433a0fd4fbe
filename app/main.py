"""
Message Dispatcher - Main FastAPI Application
"""
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.core.redis_client import close_redis
from app.api.dependencies.services import get_breakers
from app.api.routes import router as api_router
from app.db.database import engine, init_models
from app.domain.senders.registry import get_sender_registry

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "messages", "description": "Admission of SMS, WhatsApp and email messages and status lookup."},
    {"name": "webhooks", "description": "Delivery callbacks from Twilio, SendGrid, Vonage and Mailgun."},
    {"name": "admin", "description": "Dead letters, circuit breakers and message counts (X-Admin-API-Key)."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Outbound message dispatch with idempotent admission, retries with backoff, "
        "per-provider circuit breakers and a dead-letter store."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and senders on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await init_models()
    logger.info("Database tables initialized")

    registry = get_sender_registry()
    logger.info("Senders loaded", extra_data={"channels": registry.channels()})


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")
    await close_redis()


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up and answering. No dependency is checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description=(
        "Checks the database and the Celery broker and reports circuit breaker states. "
        "Returns 503 with status=degraded when a dependency is unavailable."
    ),
    responses={
        200: {
            "description": "All dependencies reachable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "broker": "ok",
                        "circuits": {"closed": ["twilio_sms"], "open": [], "half_open": []},
                    }
                }
            },
        },
        503: {"description": "At least one dependency is unavailable"},
    },
    tags=["Health"],
)
async def readiness_check(
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness(breakers)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
