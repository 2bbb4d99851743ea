import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from .config import settings
from .creator_applications import admin_router as creator_applications_admin_router
from .creator_applications import router as creator_applications_router
from .db import db
from .errors import setup_error_handlers
from .observability import (
    REQUEST_ID_HEADER,
    duration_ms,
    log_ctx,
    log_ctx_json,
    reset_request_context,
    set_request_context,
    validate_request_id,
)
from .payments import router as payments_router
from .subscriptions_api import router as subscriptions_router
from .subscriptions_api import users_router as user_subscriptions_router
from .user_stats import router as user_stats_router

SERVICE_NAME = "tribe-billing"
SERVICE_VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("tribe-api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s...", SERVICE_NAME)
    if settings.is_production():
        logger.info("security mode: production strict enabled")
    if not settings.PAYMENTS_INTERNAL_TOKEN:
        logger.warning("PAYMENTS_INTERNAL_TOKEN is not set, payment confirmations will be refused")
    await db.create_pool()
    yield
    logger.info("Shutting down %s...", SERVICE_NAME)
    await db.close_pool()


app = FastAPI(
    title="Tribe Billing API",
    description="Subscription payments and lifecycle",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_observability_middleware(request: Request, call_next):
    started_at = time.monotonic()

    incoming_request_id = request.headers.get(REQUEST_ID_HEADER)
    if incoming_request_id is None:
        request_id = str(uuid.uuid4())
    else:
        if not validate_request_id(incoming_request_id):
            request_id = str(uuid.uuid4())
            request.state.request_id = request_id
            response = JSONResponse(
                status_code=400,
                content={
                    "error": {
                        "code": "VALIDATION_FAILED",
                        "message": "Invalid request data",
                        "details": {
                            "fieldErrors": [
                                {
                                    "field": "header.X-Request-Id",
                                    "issue": "must be non-empty and <= 128 chars",
                                }
                            ]
                        },
                    }
                },
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.warning(
                "REQUEST_REJECTED context=%s",
                log_ctx_json(
                    log_ctx(
                        request,
                        extra={
                            "status_code": 400,
                            "duration_ms": duration_ms(started_at),
                            "reason": "invalid_x_request_id",
                        },
                    )
                ),
            )
            return response
        request_id = incoming_request_id.strip()

    request.state.request_id = request_id
    context_tokens = set_request_context(request_id=request_id, path=request.url.path)
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "REQUEST_DONE context=%s",
            log_ctx_json(
                log_ctx(
                    request,
                    extra={
                        "status_code": response.status_code,
                        "duration_ms": duration_ms(started_at),
                    },
                )
            ),
        )
        return response
    finally:
        reset_request_context(context_tokens)


setup_error_handlers(app)

v1_router = APIRouter(prefix="/v1")


@app.get("/health", tags=["Health"])
@v1_router.get("/health", tags=["Health"])
async def health_check():
    db_status = await db.db_check()
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "db": db_status,
    }


app.include_router(v1_router)
app.include_router(payments_router)
app.include_router(subscriptions_router)
app.include_router(user_stats_router)
app.include_router(user_subscriptions_router)
app.include_router(creator_applications_router)
app.include_router(creator_applications_admin_router)
