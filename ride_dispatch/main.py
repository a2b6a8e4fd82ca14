import logging
import time

import sentry_sdk
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .config import settings
from .database import engine
from .errors import DispatchError, InvalidTransition, StoreFailure
from .middleware_request_id import RequestIDMiddleware
from .models import Base
from .routers import bookings as bookings_router
from .routers import driver as driver_router
from .routers import fares as fares_router
from .routers import jobs as jobs_router

logger = logging.getLogger("dispatch.api")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)


def _error_body(exc: DispatchError) -> dict:
    detail = {"code": exc.code, "message": exc.message}
    if isinstance(exc, InvalidTransition):
        detail["current_status"] = exc.current
        detail["requested_status"] = exc.requested
    return {"detail": detail}


def create_app() -> FastAPI:
    logging.getLogger("dispatch").setLevel(settings.LOG_LEVEL.upper())
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN, traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE)
    app = FastAPI(title="Ride Dispatch API", version=__version__)

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON logs
    app.add_middleware(RequestIDMiddleware)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    @app.exception_handler(DispatchError)
    async def _dispatch_error(request: Request, exc: DispatchError):
        if isinstance(exc, StoreFailure):
            logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=_error_body(exc))

    @app.exception_handler(SQLAlchemyError)
    async def _store_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=503, content=_error_body(StoreFailure("Data store unavailable")))

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(bookings_router.router)
    app.include_router(fares_router.router)
    app.include_router(driver_router.router)
    admin_enabled = bool(settings.ADMIN_TOKEN or settings.admin_token_hashes)
    if admin_enabled:
        app.include_router(jobs_router.router)
    return app


app = create_app()


def main() -> None:
    import uvicorn
    uvicorn.run("ride_dispatch.main:app", host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    main()
