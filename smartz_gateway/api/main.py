"""FastAPI application factory"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from smartz_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from smartz_gateway.api.v1 import accounts, catalog, numbers, payments, price
from smartz_gateway.infrastructure.observability.logging import setup_logging
from smartz_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Smartz Gateway",
        description="Coin-priced SMS activation numbers and payment crediting",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(price.router, prefix="/v1", tags=["pricing"])
    app.include_router(numbers.router, prefix="/v1", tags=["numbers"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(accounts.router, prefix="/v1", tags=["accounts"])
    app.include_router(catalog.router, prefix="/v1", tags=["catalog"])

    return app


app = create_app()
