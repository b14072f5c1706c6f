"""
Base service class for policy engine services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Dict, Optional
import time
import os

from prometheus_client import CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST

from shared.config import ServiceConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import PolicyEngineException, ValidationError


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name, CollectorRegistry())

        configure_logging(service_name, self.config.log_level)

        if self.config.enable_tracing:
            from shared.tracing import configure_tracing
            configure_tracing(service_name, self.config.otel_exporter, self.config.enable_console_tracing)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Policy Resolution Engine - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            start_time = time.time()
            set_request_id(request.headers.get("X-Request-ID"))

            try:
                response = await call_next(request)
            finally:
                clear_context()

            duration = time.time() - start_time

            self.metrics.record_http_request(
                method=request.method,
                endpoint=request.url.path,
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

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
                self.metrics.record_health_check("ok")

                return {
                    "service": self.service_name,
                    "status": "ok" if all(v == "ok" for v in dependencies.values()) else "degraded",
                    "uptime_seconds": self._get_uptime(),
                    "dependencies": dependencies,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "error",
                        "error": str(e)
                    }
                )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(PolicyEngineException)
        async def policy_exception_handler(request: Request, exc: PolicyEngineException):
            """Handle PolicyEngineException."""
            log = self.logger.warning if exc.status_code < 500 else self.logger.error
            log(
                "Policy engine error",
                code=exc.code,
                message=exc.message,
                path=request.url.path
            )
            self.metrics.record_error(exc.code)
            headers = {}
            retry_after = exc.details.get("retry_after_seconds")
            if retry_after is not None:
                headers["Retry-After"] = str(retry_after)
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump(),
                headers=headers
            )

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            """Map request validation failures onto the structured error body."""
            errors = [
                {
                    "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                    "message": err.get("msg", "invalid value")
                }
                for err in exc.errors()
            ]
            error = ValidationError("Request validation failed", {"errors": errors})
            return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "details": {}
                }
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    async def start(self):
        """Start service components. Override in subclasses."""

    async def stop(self):
        """Stop service components. Override in subclasses."""

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        if not hasattr(self, '_start_time'):
            self._start_time = time.time()
        return time.time() - self._start_time

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
