from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgrid.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantgrid.apps.api.response import API_VERSION
from tenantgrid.apps.api.routes.admin_promotion import router as admin_promotion_router
from tenantgrid.apps.api.routes.audit import router as audit_router
from tenantgrid.apps.api.routes.credit_config import router as credit_config_router
from tenantgrid.apps.api.routes.credits import router as credits_router
from tenantgrid.apps.api.routes.health import router as health_router
from tenantgrid.apps.api.routes.locations import router as locations_router
from tenantgrid.apps.api.routes.organizations import router as organizations_router
from tenantgrid.core.config import get_settings
from tenantgrid.core.errors import TenantGridError
from tenantgrid.core.logging import configure_logging
from tenantgrid.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {f"/{API_VERSION}/health"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="TenantGrid API", docs_url=f"/{API_VERSION}/docs", openapi_url=f"/{API_VERSION}/openapi.json")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Keep caller-supplied request ids so traces line up across services.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
            request_id,
        )
        return response

    app.add_exception_handler(TenantGridError, domain_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        organizations_router,
        locations_router,
        credits_router,
        credit_config_router,
        admin_promotion_router,
        audit_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Advertise bearer auth on every route except the public health probe.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="TenantGrid API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        app_header = {
            "name": settings.application_header,
            "in": "header",
            "required": False,
            "schema": {"type": "string"},
            "description": "Application context for multi-application data separation.",
        }
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
                operation.setdefault("parameters", []).append(app_header)
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
