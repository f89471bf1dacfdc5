from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from admission.app.api.limited import router as limited_router
from admission.app.core.config import settings
from admission.app.core.logging import get_logger, setup_logging
from admission.app.exceptions import (
    AdmissionError,
    ConfigurationError,
    RateLimitExceededError,
)
from admission.app.middleware.request_id import RequestIdMiddleware, get_request_id
from admission.app.services.rate_limit import (
    get_state_store,
    reset_rate_limit_engine,
    reset_state_store,
)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Verifies the state store on startup and closes its connections on
        shutdown.
        """
        store = get_state_store()
        try:
            await store.ping()
            logger.info(
                "Application startup complete",
                extra={
                    "store": type(store).__name__,
                    "fail_closed": settings.rate_limit_fail_closed,
                },
            )
        except AdmissionError as e:
            # The fail policy covers an unreachable store, so keep serving
            logger.warning(f"State store not reachable at startup: {e}")

        yield

        await store.close()
        reset_rate_limit_engine()
        reset_state_store()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Admission Controller",
        description="Per-client rate limiting with fixed window, sliding window and token bucket algorithms",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(RequestIdMiddleware)

    app.include_router(limited_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint with state store status."""
        store = get_state_store()
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        store_type = type(store).__name__
        try:
            await store.ping()
            health_status["components"]["store"] = {"status": "ok", "type": store_type}
        except AdmissionError as e:
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {
                "status": "error",
                "type": store_type,
                "error": str(e)[:100],  # Truncate for security
            }
        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(
        request: Request, exc: RateLimitExceededError
    ) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate_limit_exceeded",
                "message": "Too many requests",
                "retry_after": exc.retry_after,
            },
            headers={
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(exc.reset_at_ms // 1000),
                "Retry-After": str(exc.retry_after or 1),
            },
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        """Handle ConfigurationError and return HTTP 400 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "configuration_error", "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()


def run() -> None:
    """Serve the application with uvicorn on settings.host:settings.port."""
    uvicorn.run(
        "admission.app.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
