import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.gateway_routes import router as gateway_router
from .api.session_routes import router as session_router
from .api.ws_routes import router as ws_router
from .errors import ChatRelayError
from .log_sanitizer import sanitize_headers_for_log
from .logging_config import logger
from .redis_client import close_redis_client
from .settings import settings


async def handle_unexpected_error(request: Request, exc: Exception):
    """
    Global exception handler: structured 500 body plus a logged error id.
    """

    error_id = uuid.uuid4().hex
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "internal_error",
            "message": "Internal server error, please try again later",
            "error_id": error_id,
        },
    )


async def handle_relay_error(request: Request, exc: ChatRelayError):
    """
    Domain errors keep their own status code and ErrorResponse body.
    """

    logger.info(
        "%s %s -> %s %s: %s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.code,
        exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(exclude_none=True),
        headers={"Cache-Control": "no-store"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifecycle:
    - startup: nothing to prepare, clients are created lazily
    - shutdown: close the Redis client of the serving loop
    """
    yield
    await close_redis_client()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Chat Relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(ChatRelayError, handle_relay_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    # CORS
    cors_origins = settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(session_router)
    app.include_router(ws_router)
    app.include_router(gateway_router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Basic request log: method, path, peer and status.
        Credentials in headers are masked.
        """

        client_host = request.client.host if request.client else "-"
        headers_for_log = sanitize_headers_for_log(request.headers)

        logger.info(
            "HTTP %s %s from %s, headers=%s",
            request.method,
            request.url.path,
            client_host,
            headers_for_log,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await handle_unexpected_error(request, exc)
        logger.info(
            "HTTP %s %s -> %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response

    return app


__all__ = ["create_app", "handle_relay_error", "handle_unexpected_error"]
