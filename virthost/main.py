import time
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Local imports
from .core.config import (
    APP_NAME,
    APP_VERSION,
    CORS_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_HEADERS,
    get_settings,
)
from .core.logging import setup_logging
from .core.relays import RelayRegistry
from .libvirt.domain import LibvirtDomainManager
from .libvirt.errors import VirtError
from .libvirt.host import LibvirtHost
from .api import domains, health

# Initialize Logging
setup_logging()
logger = logging.getLogger(APP_NAME)


def build_manager() -> LibvirtDomainManager:
    """Wire the hypervisor connection, relay registry and domain helpers from settings."""
    settings = get_settings()
    host = LibvirtHost(settings.libvirt_uri)
    relays = RelayRegistry(settings.relay_command, spawn_grace=settings.relay_spawn_grace)
    return LibvirtDomainManager(host, settings, relays)


def create_app(manager: Optional[LibvirtDomainManager] = None) -> FastAPI:
    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        description="REST API for managing libvirt domains and their SPICE console relays",
    )
    app.state.manager = manager or build_manager()

    # Configure CORS
    if CORS_ORIGINS:
        logger.info("Enabling CORS for origins: %s", CORS_ORIGINS)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ORIGINS,
            allow_credentials=CORS_ALLOW_CREDENTIALS,
            allow_methods=CORS_ALLOW_METHODS,
            allow_headers=CORS_ALLOW_HEADERS,
        )
    else:
        logger.warning("No CORS origins defined in config.yaml; CORS disabled.")

    # Simple request timing middleware for visibility
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        logger.info(
            "%s %s -> %d (%d ms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    @app.exception_handler(VirtError)
    async def handle_virt_error(request: Request, exc: VirtError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("%s %s failed [%s]: %s", request.method, request.url.path, exc.key, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "Internal server error"},
        )

    # Routers
    app.include_router(health.router, prefix='/api')
    app.include_router(domains.router, prefix='/api')

    @app.on_event("startup")
    async def on_startup():
        logger.info("Starting %s v%s (libvirt uri %s)", APP_NAME, APP_VERSION, app.state.manager.host.uri)

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Shutting down %s", APP_NAME)
        app.state.manager.host.close()

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "message": f"{APP_NAME} API is running",
            "version": APP_VERSION,
            "docs": "/docs",
        }

    return app


app = create_app()
