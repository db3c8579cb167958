import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from localmarket.api.v1 import api_router
from localmarket.core.config import settings
from localmarket.core.logging_config import configure_logging
from localmarket.core.sentry import init_sentry
from localmarket.middleware import RequestLoggingMiddleware
from localmarket.schemas.error import ErrorResponse

logger = logging.getLogger(__name__)


def _error_content(payload: ErrorResponse) -> dict:
    return jsonable_encoder(payload.model_dump(exclude={"reasons"} if payload.reasons is None else None))


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "coupons", "description": "Coupon validation, redemption and administration"},
        {"name": "benefits", "description": "Discount benefits earned from coupons"},
        {"name": "subscription", "description": "Premium plan status"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(
            detail=exc.detail,
            code=getattr(exc, "code", None),
            reasons=getattr(exc, "reasons", None),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_content(payload),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=_error_content(payload))

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(
            "database_error",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"method": request.method, "path": request.url.path},
        )
        payload = ErrorResponse(detail="Internal server error", code="internal_error")
        return JSONResponse(status_code=500, content=_error_content(payload))

    return app


app = get_application()
