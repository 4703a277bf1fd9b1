"""FastAPI application entry point for the mail scan bridge."""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.logging.logging_setup import setup_logging
from shared.helper.HelperConfig import HelperConfig
from shared.clients.backend.BackendClientInterface import BackendClientInterface
from shared.clients.backend.BackendClientManager import BackendClientManager
from shared.clients.ocr.OCRClientInterface import OCRClientInterface
from shared.clients.ocr.OCRClientManager import OCRClientManager
from shared.models.errors import MailProcessingError, StoreCorruptedError
from shared.models.mail import SurveyValidationError
from server.core.SessionRegistry import SessionRegistry
from server.routers.PackageRouter import router as package_router

logging = setup_logging()
app_version = os.getenv("APP_VERSION", "unknown")


def create_app(
    backend_client: BackendClientInterface | None = None,
    ocr_client: OCRClientInterface | None = None,
    root_dir: Path | None = None,
) -> FastAPI:
    """Build the API application.

    Clients passed in are used as-is (tests inject fakes); otherwise they are
    created from BACKEND_ENGINE and OCR_ENGINE when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # when the app starts
        app.state.logging = logging
        app.state.helper_config = HelperConfig(logger=logging)

        backend = backend_client or BackendClientManager(helper_config=app.state.helper_config).get_client()
        ocr = ocr_client or OCRClientManager(helper_config=app.state.helper_config).get_client()

        logging.info("Booting backend client '%s'...", backend.get_engine_name())
        await backend.boot()
        await check_connections(backend)

        app.state.backend_client = backend
        app.state.ocr_client = ocr
        app.state.session_registry = SessionRegistry(
            helper_config=app.state.helper_config,
            backend_client=backend,
            ocr_client=ocr,
            root_dir=root_dir,
        )

        # while the app is running...
        yield

        # when the app shuts down, stop the queues before closing the client they use
        logging.info("Shutting down, stopping background queues and closing clients...")
        await app.state.session_registry.close_all()
        await backend.close()
        logging.info("All clients closed.")

    app = FastAPI(
        title="mail_scan_bridge",
        description=(
            "Captures scanned mail pages, extracts their text with OCR and uploads them to the "
            "survey backend. AI classification runs in a per-user background queue; packages "
            "become ready for the user's survey once it succeeds."
        ),
        version=app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MailProcessingError)
    async def mail_processing_error_handler(request: Request, exc: MailProcessingError) -> JSONResponse:
        logging.error("Request %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(SurveyValidationError)
    async def survey_validation_error_handler(request: Request, exc: SurveyValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StoreCorruptedError)
    async def store_corrupted_error_handler(request: Request, exc: StoreCorruptedError) -> JSONResponse:
        logging.error("Local storage is corrupted: %s", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    app.include_router(package_router)
    return app


async def check_connections(backend_client: BackendClientInterface) -> None:
    """Check connectivity to the backend on startup.

    Failures are non-fatal: captures will fail with an upload error later, but
    stored packages stay readable.
    """
    try:
        result: httpx.Response = await backend_client.do_healthcheck()
    except httpx.HTTPError as e:
        logging.warning("Backend '%s' is not reachable: %s. Uploads will fail.", backend_client.get_engine_name(), e)
        return
    if result.status_code >= 500:
        logging.warning(
            "Backend '%s' answered the healthcheck with status %d. Uploads may fail.",
            backend_client.get_engine_name(),
            result.status_code,
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.info(
        "Starting mail_scan_bridge API Server v%s from root dir: %s on port 8000...",
        app_version,
        os.environ.get("ROOT_DIR", "unknown"),
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
