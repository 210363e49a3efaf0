"""
Access Gate API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import router as auth_router
from .roles import router as roles_router
from .permissions import router as permissions_router
from .users import router as users_router
from .. import __version__
from ..config import get_config
from ..errors import AccessGateError
from ..logging_config import get_logger, log_action, setup_logging
from ..system import AccessControlSystem


logger = get_logger("access_gate.api")


async def access_gate_error_handler(request: Request, exc: AccessGateError):
    log_action(logger, "warning", exc.message, action=f"{request.method} {request.url.path}",
               reason=exc.code, source=exc.detail.get("source"))
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={
        "success": False,
        "error": "validation_error",
        "message": "Request validation failed",
        "errors": jsonable_encoder(exc.errors()),
    })


def create_app(system: Optional[AccessControlSystem] = None,
               manage_lifecycle: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Pre-built system (tests inject one with an in-memory store and a
            manual clock). Built from configuration when omitted.
        manage_lifecycle: Start and stop the system (sweep scheduler, notifier pool)
            with the application
    """
    if system is None:
        config = get_config()
        setup_logging(config.log_level, log_format=config.log_format,
                      log_file=config.log_file)
        system = AccessControlSystem(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            system.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                system.shutdown()

    app = FastAPI(
        title="Access Gate API",
        description="Authentication, credential lifecycle and role-based authorization",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AccessGateError, access_gate_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(roles_router, prefix="/roles", tags=["Roles"])
    app.include_router(permissions_router, prefix="/permissions", tags=["Permissions"])
    app.include_router(users_router, prefix="/users", tags=["Users"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "access_gate",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sweep_running": system.scheduler.is_running,
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "access_gate.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
