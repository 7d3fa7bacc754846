# 📂 backend/hostbill/main.py — FastAPI application + scheduler lifecycle
# -----------------------------------------------------------------------------
# What it does:
#   1) Creates and configures the FastAPI app (CORS with credentials, since the
#      dashboard authenticates with http-only cookies).
#   2) Registers the routers under settings.API_V1_STR:
#      auth, user, admin, accounting, cron/webhooks.
#   3) Maps domain errors (ServiceError and the outbound client errors) to
#      JSON {"detail": message} with their status code.
#   4) On startup: initialises the DB and starts the APScheduler jobs
#      (daily cost accrual, overdue marking, recurring invoices).
#   5) Info endpoints: GET / and GET /healthz.
# -----------------------------------------------------------------------------

from __future__ import annotations

from typing import Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounting_routes import router as accounting_router
from .admin_routes import router as admin_router
from .auth_routes import router as auth_router
from .config import get_settings
from .cron_routes import router as cron_router
from .database import check_db_connection, on_shutdown_dispose, on_startup_init_db
from .errors import ServiceError
from .image_host import ImageHostError
from .payment_gateway import PaymentGatewayError
from .pool_client import PoolApiError
from .scheduler import setup_scheduler
from .user_routes import router as user_router
from .utils import get_logger

settings = get_settings()
log = get_logger("main")

_scheduler: Optional[AsyncIOScheduler] = None


async def _domain_error(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("[API] %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app() -> FastAPI:
    """
    Builds the FastAPI application.

    - CORS for the dashboard frontend (every origin when none are configured).
    - Routers with the settings.API_V1_STR prefix.
    - Error handlers and the root/healthcheck endpoints.
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="1.0.0",
        description="HostBill backend API (FastAPI + PostgreSQL + APScheduler)",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.effective_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_class in (ServiceError, PoolApiError, PaymentGatewayError, ImageHostError):
        app.add_exception_handler(exc_class, _domain_error)
    app.add_exception_handler(Exception, _unexpected_error)

    app.include_router(auth_router, prefix=settings.API_V1_STR, tags=["auth"])
    app.include_router(user_router, prefix=settings.API_V1_STR, tags=["user"])
    app.include_router(admin_router, prefix=settings.API_V1_STR, tags=["admin"])
    app.include_router(accounting_router, prefix=settings.API_V1_STR, tags=["accounting"])
    app.include_router(cron_router, prefix=settings.API_V1_STR, tags=["cron"])

    @app.get("/")
    async def root():
        return {
            "name": settings.PROJECT_NAME,
            "env": settings.ENV,
            "api_prefix": settings.API_V1_STR,
            "scheduler_enabled": settings.SCHEDULER_ENABLED,
        }

    @app.get("/healthz")
    async def healthz():
        """Healthcheck for load balancers; pings the database."""
        if not await check_db_connection():
            return JSONResponse({"status": "degraded", "database": False}, status_code=503)
        return {"status": "ok", "database": True}

    @app.on_event("startup")
    async def on_startup():
        global _scheduler
        print("[HOSTBILL] Starting up...")
        await on_startup_init_db()
        print("[HOSTBILL][DB] Initialized")

        if settings.SCHEDULER_ENABLED:
            _scheduler = setup_scheduler()
            _scheduler.start()
            print("[HOSTBILL][SCHEDULER] Started")

    @app.on_event("shutdown")
    async def on_shutdown():
        global _scheduler
        print("[HOSTBILL] Shutting down...")
        if _scheduler is not None:
            _scheduler.shutdown(wait=False)
            _scheduler = None
        await on_shutdown_dispose()
        print("[HOSTBILL] Shutdown complete")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("hostbill.main:app", host="0.0.0.0", port=8000, reload=True)
