"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import Settings, settings as default_settings
from app.core.logging import setup_logging
from app.core.tracing import setup_tracing, shutdown_tracing
from app.core.metrics import set_app_info
from app.core.middleware import MetricsMiddleware, RequestContextMiddleware
from app.core.storage import StorageBackend, StorageConfig, create_storage
from app.modules.compression import CompressionError, CompressionService, compression_router
from app.modules.compression.ffmpeg import FFmpegTranscoder
from app.modules.system_monitoring import system_monitoring_router

logger = logging.getLogger(__name__)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def compression_error_handler(request: Request, exc: CompressionError) -> JSONResponse:
    return _error_response(exc.status_code, exc.message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed multipart bodies and form fields are client errors."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    logger.warning(f"Rejected request: {message}", extra={"path": request.url.path})
    return _error_response(400, message)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
    return _error_response(500, "Internal server error")


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[StorageBackend] = None,
    transcoder: Optional[FFmpegTranscoder] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to use, defaults to the environment-loaded ones
        storage: Storage backend, defaults to the one ``STORAGE_BACKEND`` names
        transcoder: Encoder, defaults to ffmpeg from ``FFMPEG_PATH``

    Returns:
        Configured FastAPI application
    """
    settings = settings or default_settings
    environment = "development" if settings.DEBUG else "production"

    # Set up logging with correlation IDs
    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        include_stack_trace=True,
    )

    setup_tracing(
        service_name=settings.SERVICE_NAME,
        service_version=settings.VERSION,
        environment=environment,
        otlp_endpoint=settings.OTLP_ENDPOINT,
        enable_console_export=settings.DEBUG,
    )

    set_app_info(version=settings.VERSION, environment=environment)

    if storage is None:
        storage = create_storage(StorageConfig.from_settings(settings))
    if transcoder is None:
        transcoder = FFmpegTranscoder(
            ffmpeg_path=settings.FFMPEG_PATH,
            ffprobe_path=settings.FFPROBE_PATH,
            timeout=settings.FFMPEG_TIMEOUT_SECONDS,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        os.makedirs(settings.UPLOAD_TMP_DIR, exist_ok=True)
        logger.info(
            f"{settings.SERVICE_NAME} v{settings.VERSION} ready "
            f"(storage={settings.STORAGE_BACKEND}, tmp={settings.UPLOAD_TMP_DIR})"
        )
        yield
        shutdown_tracing()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=(
            "Compresses uploaded videos to 480p H.264/AAC MP4 and publishes "
            "them to object storage."
        ),
        lifespan=lifespan,
        openapi_tags=[
            {
                "name": "compression",
                "description": "Video upload, compression and publishing",
            },
            {
                "name": "system-monitoring",
                "description": "Prometheus metrics and health checks",
            },
        ],
    )

    app.state.settings = settings
    app.state.compression_service = CompressionService(
        storage=storage,
        transcoder=transcoder,
        max_output_size=settings.MAX_OUTPUT_SIZE_BYTES,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Last added runs outermost
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(CompressionError, compression_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(compression_router)
    app.include_router(system_monitoring_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)
