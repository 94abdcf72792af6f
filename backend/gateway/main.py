"""Application factory for the gateway service."""

from fastapi import FastAPI

from gateway.api.routes.dispatch import router as dispatch_router
from gateway.api.routes.events import router as events_router
from gateway.api.routes.health import router as health_router
from gateway.core.config import GATEWAY_VERSION, GatewayConfig
from gateway.core.db import GatewayStore
from gateway.core.errors import init_error_handlers
from gateway.core.handler import Handler
from gateway.core.middleware import BodySizeLimitMiddleware, RequestContextLogMiddleware
from gateway.core.pipeline import AdmissionPipeline, Clock


def create_app(
    config: GatewayConfig,
    handler: Handler,
    *,
    store: GatewayStore | None = None,
    clock: Clock | None = None,
    title: str = "Gateway",
) -> FastAPI:
    """Build the FastAPI app; the store is opened by the caller (see ``GatewayServer``)."""

    app = FastAPI(title=title, version=GATEWAY_VERSION, docs_url=None, redoc_url=None)
    app.state.pipeline = AdmissionPipeline(config, handler, store=store, clock=clock)

    init_error_handlers(app)

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=config.max_body_bytes)
    app.add_middleware(RequestContextLogMiddleware)

    # Order matters: the catch-all dispatch route must be registered last.
    app.include_router(health_router)
    app.include_router(events_router)
    app.include_router(dispatch_router)
    return app
