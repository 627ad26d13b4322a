from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from tenant_billing.shared.core.app_routes import (
    register_api_routers,
    register_lifecycle_routes,
)
from tenant_billing.shared.core.config import get_settings, reload_settings_from_environment
from tenant_billing.shared.core.error_governance import handle_exception
from tenant_billing.shared.core.exceptions import TenantBillingException
from tenant_billing.shared.core.http import close_http_client, init_http_client
from tenant_billing.shared.core.logging import setup_logging
from tenant_billing.shared.core.middleware import RequestIDMiddleware
from tenant_billing.shared.core.ops_metrics import API_ERRORS_TOTAL
from tenant_billing.shared.db.session import dispose_db_runtime

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME)

    await init_http_client()

    yield

    logger.info("app_shutting_down")
    # Close the HTTP pool first so no new processor calls start.
    await close_http_client()
    await dispose_db_runtime()
    logger.info("db_engine_disposed")


async def tenant_billing_exception_handler(
    request: Request, exc: TenantBillingException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render FastAPI HTTP exceptions in the standard error envelope."""
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": getattr(request.state, "request_id", None),
                "details": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions get a sanitized envelope and a full log entry."""
    return handle_exception(request, exc)


def create_app() -> FastAPI:
    setup_logging()
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    app.add_exception_handler(TenantBillingException, tenant_billing_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    register_lifecycle_routes(app, app_name=settings.APP_NAME, version=settings.VERSION)
    register_api_routers(app)

    Instrumentator().instrument(app).expose(app)
    app.add_middleware(RequestIDMiddleware)
    return app


app = create_app()

__all__ = ["app", "create_app", "lifespan"]
