"""
Base service class for the delivery platform services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from typing import Dict, Any
import time
import sys
import os

import uvicorn

from shared.config import BaseConfig
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector
from shared.errors import PlatformException, ValidationError, error_response


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, config: BaseConfig, ops_prefix: str = ""):
        self.config = config
        self.service_name = config.service_name
        self.port = config.port
        self.ops_prefix = ops_prefix.rstrip("/")
        self._start_time = time.time()

        configure_logging(self.service_name, self.config.log_level)
        self.logger = get_logger(self.service_name)
        self.metrics = get_metrics_collector(self.service_name)

        self.app = self._create_app()

        self._setup_middleware()
        self._setup_error_handlers()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.on_startup()
            try:
                yield
            finally:
                await self.on_shutdown()

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Delivery platform - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
            openapi_url="/openapi.json" if self.config.diagnostics_enabled else None,
            lifespan=lifespan,
        )

    async def on_startup(self) -> None:
        self.logger.info("Service starting", host=self.config.host, port=self.config.port, env=self.config.env)

    async def on_shutdown(self) -> None:
        self.logger.info("Service stopping")

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.perf_counter()

            response = await call_next(request)

            duration = time.perf_counter() - start_time

            self.metrics.record_http_request(
                method=request.method,
                status_code=response.status_code,
                duration=duration
            )

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2)
            )

            return response

    def _setup_error_handlers(self):
        """Render every error as the shared error envelope."""

        def _respond(request: Request, exc: BaseException) -> JSONResponse:
            if not isinstance(exc, PlatformException) or exc.status_code >= 500:
                self.metrics.record_error(type(exc).__name__)
            return error_response(
                exc,
                request,
                include_diagnostics=self.config.diagnostics_enabled,
                logger=self.logger,
            )

        @self.app.exception_handler(PlatformException)
        async def platform_exception_handler(request: Request, exc: PlatformException):
            return _respond(request, exc)

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            message = exc.detail if isinstance(exc.detail, str) else "Request failed"
            wrapped = PlatformException("HTTP_ERROR", message, exc.status_code, headers=exc.headers)
            return _respond(request, wrapped)

        @self.app.exception_handler(RequestValidationError)
        async def validation_exception_handler(request: Request, exc: RequestValidationError):
            return _respond(request, ValidationError(details=exc.errors()))

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            return _respond(request, exc)

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get(f"{self.ops_prefix}/health")
        async def health_check():
            """Health check endpoint."""
            dependencies = await self._check_dependencies()
            status = "ok" if all(value == "ok" for value in dependencies.values()) else "degraded"
            self.metrics.record_health_check(status)

            return {
                "service": self.service_name,
                "status": status,
                "uptime_seconds": self._get_uptime(),
                "dependencies": dependencies,
                "version": "1.0.0",
                "commit": os.getenv("GIT_COMMIT", "unknown")
            }

        @self.app.get(f"{self.ops_prefix}/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(
                content=self.metrics.render(),
                media_type=CONTENT_TYPE_LATEST
            )

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    def run(self):
        """Run the service; a listen socket that cannot be bound ends the process."""
        self.logger.info("Listening", url=f"http://{self.config.host}:{self.config.port}")
        try:
            uvicorn.run(
                self.app,
                host=self.config.host,
                port=self.config.port,
                log_level=self.config.log_level,
            )
        except OSError as exc:
            self.logger.error(
                "Failed to bind listen socket",
                host=self.config.host,
                port=self.config.port,
                error=str(exc),
            )
            sys.exit(1)
