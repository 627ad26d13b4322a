from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import Gauge

from tenant_billing.shared.db.session import health_check as db_health_check

SYSTEM_HEALTH = Gauge(
    "tenant_billing_system_health",
    "System health status (1=healthy, 0=unhealthy)",
)

API_V1_PREFIX = "/api/v1"


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check() -> Any:
        """Readiness check for load balancers; 503 when the database is down."""
        database = await db_health_check()
        healthy = database["status"] == "up"
        SYSTEM_HEALTH.set(1.0 if healthy else 0.0)

        body = {"status": "healthy" if healthy else "unhealthy", "database": database}
        if not healthy:
            return JSONResponse(status_code=503, content=body)
        return body


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep the entrypoint focused."""
    from tenant_billing.modules.billing.api.v1.billing import router as billing_router

    app.include_router(billing_router, prefix=f"{API_V1_PREFIX}/billing")
