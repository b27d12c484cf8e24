import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from app.core.config import settings as core_settings
from app.database import check_database_connection, db_settings
from app.routes.admin import router as admin_router
from app.routes.auth import router as auth_router
from app.routes.calls import router as calls_router
from app.routes.crm import router as crm_router
from app.routes.cron import router as cron_router
from app.routes.gdpr import router as gdpr_router
from app.routes.notifications import router as notifications_router
from app.routes.partners import router as partners_router
from app.routes.payments import router as payments_router
from app.routes.rate_confirmations import router as rate_confirmations_router
from app.routes.referrals import router as referrals_router
from app.routes.twilio import router as twilio_router
from app.routes.usage import router as usage_router


logging.basicConfig(
    level=getattr(logging, (core_settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=core_settings.APP_NAME)
app.add_middleware(
    SessionMiddleware,
    secret_key=core_settings.SESSION_SECRET_KEY,
    same_site="lax",
    https_only=core_settings.is_production,
    domain=(core_settings.SESSION_COOKIE_DOMAIN or None),
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=core_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(calls_router)
app.include_router(usage_router)
app.include_router(payments_router)
app.include_router(twilio_router)
app.include_router(crm_router)
app.include_router(rate_confirmations_router)
app.include_router(referrals_router)
app.include_router(partners_router)
app.include_router(gdpr_router)
app.include_router(notifications_router)
app.include_router(admin_router)
app.include_router(cron_router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.get("/health")
def health() -> dict[str, str]:
    database = "connected"
    status_value = "healthy"
    try:
        check_database_connection()
    except Exception:
        logger.warning("health: database check failed", exc_info=True)
        database = "disconnected"
        status_value = "degraded"

    return {
        "status": status_value,
        "database": database,
        "environment": core_settings.ENV,
        "base_url": core_settings.APP_BASE_URL,
    }


@app.get("/heartbeat")
def heartbeat() -> dict[str, str | int]:
    return {
        "service": core_settings.APP_NAME,
        "status": "alive",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "db_host": db_settings.db_host,
        "db_port": db_settings.db_port,
    }
