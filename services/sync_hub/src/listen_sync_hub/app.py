"""Factory for the Listen Sync relay hub FastAPI application."""

from __future__ import annotations

import json
import logging
import logging.config
import time
from contextlib import asynccontextmanager
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router
from .config import get_settings
from .hub import SyncHub
from .observability import setup_observability
from .version import __version__

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    _setup_logging()
    settings = get_settings()
    hub = SyncHub(settings=settings)
    await hub.start()
    app.state.hub = hub
    try:
        yield
    finally:
        await hub.stop()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    settings = get_settings()
    app = FastAPI(
        title="Listen Sync Hub",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_lifespan,
    )
    setup_observability(app, service_name="listen-sync-hub")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):  # type: ignore[override]
        """Attach `trace_id` to request and response headers for correlation."""

        incoming = request.headers.get("x-trace-id") or request.headers.get("x-request-id")
        trace_id = incoming or uuid4().hex
        request.state.trace_id = trace_id
        response: Response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        response.headers.setdefault("X-Request-Id", trace_id)
        return response

    @app.get("/config", tags=["system"])
    def read_config(request: Request) -> dict[str, str | int]:
        """Return service config snapshot for diagnostics."""

        trace_id = getattr(request.state, "trace_id", "")
        return {
            "apiVersion": settings.api_version,
            "maxConnectionsPerSession": settings.max_connections_per_session,
            "traceId": trace_id,
        }

    @app.middleware("http")
    async def http_logger(request: Request, call_next):  # type: ignore[override]
        """Log method, path, status and elapsedMs with traceId."""

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            trace_id = getattr(request.state, "trace_id", "")
            status_code = response.status_code if response else 500
            logging.getLogger("http").info(
                "method=%s path=%s status=%s elapsedMs=%s traceId=%s",
                request.method,
                request.url.path,
                status_code,
                elapsed_ms,
                trace_id,
            )

    logger.info("Listen Sync hub initialised with API version %s", settings.api_version)
    return app


def _setup_logging() -> None:
    """Load JSON logging config if present."""

    config_path = Path.cwd() / "observability" / "logging.json"
    if not config_path.exists():
        return
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            cfg = json.load(fh)
        logging.config.dictConfig(cfg)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring logging config %s: %s", config_path, exc)
