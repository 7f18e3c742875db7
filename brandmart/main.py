import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from brandmart.errors import (
    Forbidden,
    InvalidPayload,
    OrderNotFound,
    OrderStateError,
    ProductNotFound,
    ProviderError,
)
from brandmart.metrics import get_metrics_bytes, get_metrics_content_type
from brandmart.redis_client import close_redis, get_redis
from brandmart.routes import admin, orders, webhooks
from brandmart.services import Services, build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (OrderNotFound, 404),
    (ProductNotFound, 404),
    (Forbidden, 403),
    (OrderStateError, 400),
    (InvalidPayload, 400),
    (ProviderError, 502),
)


def create_app(services: Services | None = None) -> FastAPI:
    """Tests pass ready-made services; otherwise they are built from settings on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or await build_services()
        await get_redis()
        yield
        await close_redis()
        if services is None:
            await app.state.services.aclose()

    app = FastAPI(title="Brandmart Orders", lifespan=lifespan)
    app.include_router(orders.router)
    app.include_router(webhooks.router)
    app.include_router(admin.router)

    for exc_type, status_code in _ERROR_STATUS:
        app.add_exception_handler(exc_type, _error_handler(status_code))

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint: webhooks, transitions, stock and provider failures."""
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


def _error_handler(status_code: int):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handle


app = create_app()
