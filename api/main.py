"""Villy retrieval API service.

FastAPI application exposing pipeline health and performance statistics.
"""

from __future__ import annotations

import logging
import time

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from api.routers import performance as performance_router
from libs.common.settings import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    """Configure structlog on top of stdlib logging at the configured level."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, settings.log_level))

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
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Villy Retrieval API",
        description="Confidence-gated retrieval and reranking core for a Philippine law assistant",
        version="1.0.0",
        default_response_class=ORJSONResponse,
        debug=settings.debug,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        logger.info("Request started", request_id=request_id, method=request.method, url=str(request.url))

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(performance_router.router, prefix="/api")

    logger.info("Villy API created", app_env=settings.app_env, reranker=settings.reranker)
    return app


# Create the FastAPI app
app = create_app()


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint to confirm the API is running."""
    return {"message": "Villy API is running."}
