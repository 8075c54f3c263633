import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ingest.api.routers import callbacks as callbacks_router
from ingest.api.routers import internal as internal_router
from ingest.api.routers import public as public_router
from ingest.api.routers import v6 as v6_router
from ingest.api.routers import v7 as v7_router
from ingest.core.config import Settings, get_settings
from ingest.core.exceptions import IngestError, RangeNotSatisfiableError
from ingest.core.logging import setup_logging
from ingest.db.session import create_engine, create_session_factory
from ingest.services.callbacks import CallbackOrchestrator
from ingest.services.files import FileRegistry
from ingest.services.metadata_store import MetadataStore
from ingest.services.storage import StorageService, create_storage_service
from ingest.services.uploads import UploadService
from ingest.tasks.runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)


async def startup(
    app: FastAPI,
    settings: Settings,
    *,
    storage: StorageService | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    engine = create_engine(settings)
    store = MetadataStore(engine, create_session_factory(engine))
    if settings.auto_create_schema:
        await store.create_schema()
    await store.purge_expired()

    storage = storage or create_storage_service(settings)
    registry = FileRegistry(store, settings)
    runner = BackgroundTaskRunner(max_parallel=settings.max_parallel_tasks)
    monitor_runner = BackgroundTaskRunner(max_parallel=settings.max_dev_monitors)
    http_client = http_client or httpx.AsyncClient(timeout=settings.callback_timeout_seconds)
    callbacks = CallbackOrchestrator(
        settings, storage, registry, http_client, runner, monitor_runner
    )

    app.state.settings = settings
    app.state.metadata_store = store
    app.state.storage = storage
    app.state.registry = registry
    app.state.runner = runner
    app.state.monitor_runner = monitor_runner
    app.state.http_client = http_client
    app.state.callbacks = callbacks
    app.state.upload_service = UploadService(settings, storage, registry, callbacks)

    await runner.start()
    await monitor_runner.start()
    logger.info(
        "%s started",
        settings.service_name,
        extra={"storage": storage.scheme, "env": settings.env},
    )


async def shutdown(app: FastAPI) -> None:
    await app.state.monitor_runner.stop()
    await app.state.runner.stop()
    await app.state.http_client.aclose()
    await app.state.metadata_store.dispose()
    logger.info("%s stopped", app.state.settings.service_name)


async def handle_ingest_error(request: Request, exc: IngestError) -> JSONResponse:
    headers = None
    if isinstance(exc, RangeNotSatisfiableError):
        headers = {"Content-Range": f"bytes */{exc.size}"}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=headers)


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        {"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await startup(app, settings)
        yield
        await shutdown(app)

    app = FastAPI(
        debug=settings.debug,
        title="Ingest Gateway API",
        lifespan=lifespan,
    )
    app.add_exception_handler(IngestError, handle_ingest_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={"duration_ms": round((time.perf_counter() - started) * 1000, 1)},
        )
        return response

    app.include_router(v6_router.router)
    app.include_router(v7_router.router)
    app.include_router(callbacks_router.router)
    app.include_router(internal_router.router)
    app.include_router(public_router.router)

    return app


app = create_app()
