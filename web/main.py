"""
FastAPI web application for the order sync pipeline.
"""
import os
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse, JSONResponse

from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from web.config import VERSION
from web.routes import api
from web.routes.api._deps import limiter
from web.middleware import RequestLoggingMiddleware
from ordersync.config import config, validate_config, ConfigurationError
from ordersync.duckdb_store import get_store, close_store
from ordersync.exceptions import OrderSyncError
from ordersync.observability import setup_logging, get_logger
from ordersync.order_queue import get_order_queue, close_order_queue
from ordersync.scheduler import start_scheduler, stop_scheduler
from ordersync.sync_service import close_sync_service

# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
log_format = os.getenv("LOG_FORMAT", "text")
log_level = os.getenv("LOG_LEVEL", "INFO")
setup_logging(level=log_level, json_format=(log_format == "json"))
logger = get_logger(__name__)

app = FastAPI(
    title="Order Sync",
    description="Incremental marketplace order synchronization",
    version=VERSION,
    default_response_class=ORJSONResponse,
)

app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": "Too many requests. Please try again later.",
            "retry_after": exc.detail
        }
    )


@app.exception_handler(OrderSyncError)
async def order_sync_error_handler(request: Request, exc: OrderSyncError):
    logger.error(f"Unhandled pipeline error on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content=exc.to_dict())


app.add_middleware(RequestLoggingMiddleware)

app.include_router(api.router, prefix="/api")


@app.on_event("startup")
async def startup_event():
    logger.info("Order sync API starting...")

    # Credentials are only needed once a token refresh happens
    try:
        validate_config(require_credentials=False)
        logger.info("Configuration validated")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        raise SystemExit(1)

    try:
        store = await get_store()
        stats = await store.get_stats()
        logger.info(f"DuckDB ready: {stats['orders']} orders, {stats['accounts']} accounts")
    except Exception as e:
        logger.error(f"DuckDB initialization failed: {e}", exc_info=True)
        raise

    # Non-fatal: the pipeline saves directly without the queue
    if config.queue.enabled:
        queue = await get_order_queue()
        if queue.is_connected:
            logger.info("Order queue connected")
        else:
            logger.info("Order queue not available, saving directly")

    try:
        await start_scheduler()
        logger.info("Background job scheduler started")
    except Exception as e:
        logger.error(f"Scheduler initialization failed: {e}", exc_info=True)


@app.on_event("shutdown")
async def shutdown_event():
    try:
        stop_scheduler()
        logger.info("Scheduler stopped")
    except Exception as e:
        logger.warning(f"Error stopping scheduler: {e}")

    try:
        await close_sync_service()
    except Exception as e:
        logger.warning(f"Error closing sync service: {e}")

    try:
        await close_order_queue()
    except Exception as e:
        logger.warning(f"Error disconnecting Redis: {e}")

    try:
        await close_store()
        logger.info("DuckDB closed")
    except Exception as e:
        logger.warning(f"Error closing DuckDB: {e}")
    logger.info("Order sync API stopped")
