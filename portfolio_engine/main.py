from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional
import structlog

from .config import settings, VERSION
from .error_handling import (
    PortfolioEngineError, NotFound, Unsupported, InsufficientFunds,
    SlippageExceeded, UpstreamUnavailable, InsufficientData
)
from .models import utcnow
from .routes import router
from .service import PortfolioService, build_service

logger = structlog.get_logger()

ERROR_STATUS = {
    NotFound: 404,
    Unsupported: 400,
    InsufficientFunds: 402,
    SlippageExceeded: 409,
    UpstreamUnavailable: 503,
    InsufficientData: 503,
}


def configure_logging(level: str = "INFO"):
    """Configure structured logging"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def status_for(exc: PortfolioEngineError) -> int:
    for error_class, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_class):
            return status_code
    return 500


def create_app(service: Optional[PortfolioService] = None) -> FastAPI:
    """Build the API; a service built from settings is used when none is injected"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup_start_time = time.time()
        logger.info("Starting Portfolio Risk Engine")

        app.state.service = service or build_service(settings)

        logger.info("Portfolio Risk Engine ready",
                    platforms=app.state.service.registry.platforms(),
                    startup_time_seconds=round(time.time() - startup_start_time, 2))

        yield

        logger.info("Shutting down Portfolio Risk Engine")
        try:
            await app.state.service.shutdown()
            logger.info("Portfolio Risk Engine shutdown complete")
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))

    app = FastAPI(
        title="Portfolio Risk Engine",
        description="DeFi portfolio risk monitoring, strategy recommendation and position analytics",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        logger.info("Request received",
                    method=request.method,
                    path=request.url.path,
                    client_ip=request.client.host if request.client else "unknown")

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info("Request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    process_time=round(process_time, 3))

        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(PortfolioEngineError)
    async def engine_error_handler(request: Request, exc: PortfolioEngineError):
        status_code = status_for(exc)
        logger.warning("Request failed with engine error",
                       method=request.method,
                       path=request.url.path,
                       error_type=type(exc).__name__,
                       error=str(exc),
                       status_code=status_code)
        return JSONResponse(
            status_code=status_code,
            content={
                "error": str(exc),
                "error_type": type(exc).__name__,
                "status_code": status_code,
                "timestamp": utcnow().isoformat()
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("HTTP exception",
                       method=request.method,
                       path=request.url.path,
                       status_code=exc.status_code,
                       detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code,
                "timestamp": utcnow().isoformat()
            }
        )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint with service information"""
        return {
            "service": "Portfolio Risk Engine",
            "version": VERSION,
            "status": "operational",
            "timestamp": utcnow().isoformat(),
            "endpoints": {
                "health": "/api/health",
                "status": "/api/status",
                "strategies": "/api/strategies",
                "positions": "/api/positions",
                "alerts": "/api/alerts",
                "docs": "/docs"
            },
            "authentication": "Requires x-wallet-address header"
        }

    return app


configure_logging(settings.LOG_LEVEL)

app = create_app()
