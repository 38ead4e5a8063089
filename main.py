# main.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.escrow.errors import EscrowError
from middleware import REQUEST_ID_HEADER, RequestContextMiddleware
from routes.admin_escrow import router as admin_escrow_router
from routes.escrow import router as escrow_router
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from services.escrow_errors import escrow_error_response
from services.observability import configure_logging, get_request_id
from settings import settings, validate_env_settings

logger = logging.getLogger("escrow.http")


def create_app() -> FastAPI:
    configure_logging(settings.LOG_LEVEL)
    validate_env_settings()

    app = FastAPI(title="Escrow API", version="1.0.0")

    # -----------------------------
    # MIDDLEWARE
    # -----------------------------
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(escrow_router)
    app.include_router(admin_escrow_router)

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        status, body = escrow_error_response(exc)
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        headers = {}
        request_id = get_request_id() or getattr(request.state, "request_id", None)
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
            headers=headers,
        )

    return app


app = create_app()
