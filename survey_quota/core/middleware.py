"""Global error handlers."""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from survey_quota.core.exceptions import SurveyQuotaError

logger = structlog.get_logger()


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SurveyQuotaError)
    async def handle_survey_quota_error(request: Request, exc: SurveyQuotaError):
        log = logger.error if exc.http_status >= 500 else logger.warning
        log("business_error", code=exc.code, message=exc.message,
            status=exc.http_status, path=request.url.path)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'Invalid request')}" if location else "Invalid request"
        logger.warning("request_rejected", path=request.url.path, message=message)
        return JSONResponse(
            status_code=400,
            content={"errorCode": "VALIDATION_ERROR", "message": message, "severity": "warning"},
        )

    @app.exception_handler(Exception)
    async def handle_general_error(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"errorCode": "INTERNAL_ERROR", "message": "Internal server error"},
        )
