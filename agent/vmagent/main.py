"""Main application entry point."""

import logging
import sys
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

from .core.config import settings
from .core.config_validation import ConfigValidationResult, run_config_checks
from .api.routes import router
from .services.reconciler_service import reconciler_service
from .services.vmapi_client import vmapi_client

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def _log_config_result(config_result: ConfigValidationResult) -> None:
    for issue in config_result.errors:
        logger.error("Configuration error: %s", issue.message)
        if issue.hint:
            logger.error("Hint: %s", issue.hint)

    for issue in config_result.warnings:
        logger.warning("Configuration warning: %s", issue.message)
        if issue.hint:
            logger.warning("Hint: %s", issue.hint)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", settings.app_name)
    logger.info("Version: %s", settings.app_version)
    logger.info("Server UUID: %s", settings.server_uuid)
    logger.info("VMAPI: %s", settings.get_vmapi_base_url())

    config_result = run_config_checks()
    _log_config_result(config_result)
    # Misconfiguration is the one fatal startup condition
    config_result.raise_for_errors()

    client_started = False
    reconciler_started = False

    await vmapi_client.start()
    client_started = True

    await reconciler_service.start()
    reconciler_started = True
    logger.info("Reconciler started; initial synchronisation continues in the background")

    try:
        yield
    finally:
        logger.info("Shutting down agent")
        if reconciler_started:
            await reconciler_service.stop()
        if client_started:
            await vmapi_client.stop()
        logger.info("Agent stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Reports the virtual machines on this compute node to VMAPI",
    lifespan=lifespan,
)


@app.middleware("http")
async def security_and_audit_middleware(request: Request, call_next):
    """Add security headers and request logging."""
    start_time = time.time()

    client_ip = request.client.host if request.client else "unknown"
    logger.debug(
        "Request started: %s %s from %s", request.method, request.url.path, client_ip
    )

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "Request failed: %s %s Error: %s Time: %.4fs",
            request.method,
            request.url.path,
            str(e)[:200],
            process_time,
        )
        raise

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cache-Control"] = "no-store"

    process_time = time.time() - start_time
    logger.debug(
        "Request completed: %s %s Status: %s Time: %.4fs",
        request.method,
        request.url.path,
        response.status_code,
        process_time,
    )
    return response


# Include API routes
app.include_router(router)


def main():
    """Run the agent."""
    config_result = run_config_checks()
    if config_result.has_errors:
        _log_config_result(config_result)
        logger.error("Refusing to start with an invalid configuration")
        sys.exit(1)

    uvicorn.run(
        "vmagent.main:app",
        host=settings.listen_host,
        port=settings.listen_port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
