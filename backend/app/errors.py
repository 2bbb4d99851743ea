from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Optional
import logging

from .observability import REQUEST_ID_HEADER, get_request_id, log_ctx, log_ctx_json

logger = logging.getLogger("tribe-errors")

class BillingError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 400, details: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class InvalidTargetError(BillingError):
    """The payment names a creator that cannot receive subscriptions. Not retried."""

    def __init__(self, creator_id: str, reason: str = "not_creator"):
        super().__init__(
            code="INVALID_TARGET",
            message="Invalid subscription target",
            status_code=422,
            details={"creatorId": str(creator_id), "reason": reason},
        )


class StoreUnavailableError(BillingError):
    """The atomic write did not complete and was rolled back. Safe to retry as is."""

    def __init__(self, stage: str, reason: Optional[str] = None):
        details = {"stage": stage, "retryable": True}
        if reason:
            details["reason"] = reason
        super().__init__(
            code="STORE_UNAVAILABLE",
            message="Storage temporarily unavailable",
            status_code=503,
            details=details,
        )


class NotFoundError(BillingError):
    def __init__(self, resource: str):
        super().__init__(
            code="NOT_FOUND",
            message="Not found",
            status_code=404,
            details={"resource": resource},
        )


def validation_error(field: str, issue: str) -> BillingError:
    return BillingError(
        code="VALIDATION_FAILED",
        message="Invalid request data",
        status_code=400,
        details={"fieldErrors": [{"field": field, "issue": issue}]},
    )


def setup_error_handlers(app: FastAPI):
    def _json_error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
        response = JSONResponse(status_code=status_code, content=content)
        request_id = get_request_id(request)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return _json_error_response(
            request=request,
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        field_errors = []
        for error in exc.errors():
            field_errors.append({
                "field": ".".join(str(p) for p in error["loc"]),
                "issue": error["msg"]
            })

        return _json_error_response(
            request=request,
            status_code=400,
            content={
                "error": {
                    "code": "VALIDATION_FAILED",
                    "message": "Invalid request data",
                    "details": {"fieldErrors": field_errors},
                }
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = "INTERNAL_ERROR"
        if exc.status_code == 401:
            code = "UNAUTHORIZED"
        elif exc.status_code == 403:
            code = "FORBIDDEN"
        elif exc.status_code == 404:
            code = "NOT_FOUND"

        return _json_error_response(
            request=request,
            status_code=exc.status_code,
            content={
                "error": {
                    "code": code,
                    "message": exc.detail if isinstance(exc.detail, str) else "Error",
                    "details": {},
                }
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception context=%s",
            log_ctx_json(log_ctx(request, extra={"status_code": 500})),
            exc_info=True,
        )
        return _json_error_response(
            request=request,
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {},  # Do not leak internal details in production
                }
            },
        )
