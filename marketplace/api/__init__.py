# marketplace/api/__init__.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marketplace.api.routers import carts, orders, payments, health
from marketplace.domain.errors import (
    MarketplaceError,
    NotFoundError,
    InvalidStateError,
    ValidationFailure,
    ConcurrencyConflict,
    UpstreamFailure,
)
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

_STATUS = {
    NotFoundError: 404,
    InvalidStateError: 409,
    ValidationFailure: 422,
    ConcurrencyConflict: 409,
    UpstreamFailure: 502,
}


def _handler(status_code: int):
    async def handle(request: Request, exc: MarketplaceError):
        if status_code >= 500:
            logger.error(
                f"{request.method} {request.url.path} -> {status_code}: {exc.message}",
                extra=exc.context,
            )
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "error": exc.code},
        )

    return handle


def register_exception_handlers(app: FastAPI) -> None:
    for exc_class, status_code in _STATUS.items():
        app.add_exception_handler(exc_class, _handler(status_code))


def create_app(lifespan=None) -> FastAPI:
    app = FastAPI(
        title="CSP Marketplace Cart Service",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(carts.router)
    app.include_router(orders.router)
    app.include_router(payments.router)

    return app
