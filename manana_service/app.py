"""FastAPI entry point for the page processing service.

Endpoints:
- POST   /v1/pages                   Upload page images (appended in order)
- GET    /v1/pages                   List pages with status
- GET    /v1/pages/{ordinal}/result  Download a page's generated image
- DELETE /v1/pages/{ordinal}         Remove one page
- DELETE /v1/pages                   Clear all pages and any active run
- POST   /v1/pages/reorder           Renumber pages in a new order
- POST   /v1/pages/sort              Sort pages by file name
- POST   /v1/pages/{ordinal}/rerun   Re-execute one done/failed page
- POST   /v1/runs                    Start processing all pages
- GET    /v1/runs/current            Progress, last error and page statuses
- GET    /liveness                   Health check
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, cast

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from manana_service.config import (
    IS_CLOUD_RUN,
    MANANA_CORS_ALLOW_CREDENTIALS,
    MANANA_CORS_ALLOW_HEADERS,
    MANANA_CORS_ALLOW_METHODS,
    MANANA_CORS_ALLOW_ORIGINS,
    MANANA_MAX_UPLOAD_BYTES,
    MANANA_SHARED_TOKEN,
)
from manana_service.logging_config import generate_request_id, setup_logging
from manana_service.models import (
    AcceptedResponse,
    HealthResponse,
    PageListResponse,
    PageSummary,
    ReorderRequest,
    RerunRequest,
    RunRequest,
    RunStatusResponse,
    SortRequest,
)
from manana_service.pipeline.controller import PipelineController
from manana_service.pipeline.errors import InvalidTransitionError, PageNotFoundError, RunActiveError
from manana_service.pipeline.gemini import GeminiImageClient
from manana_service.pipeline.observer import LoggingObserver

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/liveness", "/docs", "/openapi.json"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the controller on startup, stop it on shutdown."""
    setup_logging()
    if IS_CLOUD_RUN and not MANANA_SHARED_TOKEN:
        logger.warning("MANANA_SHARED_TOKEN is not set; the API is open to anyone who can reach it")
    controller = PipelineController(GeminiImageClient(), observer=LoggingObserver())
    await controller.start()
    app.state.controller = controller
    logger.info("Page processing service started")
    yield
    await controller.aclose()
    logger.info("Page processing service stopped")


app = FastAPI(
    title="Nano Manana API",
    version="0.1.0",
    lifespan=lifespan,
)

# -- Rate limiting ------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


if MANANA_CORS_ALLOW_CREDENTIALS and "*" in MANANA_CORS_ALLOW_ORIGINS:
    raise RuntimeError("Invalid CORS config: wildcard origin cannot be combined with credentials=true")

app.add_middleware(
    CORSMiddleware,
    allow_origins=MANANA_CORS_ALLOW_ORIGINS,
    allow_credentials=MANANA_CORS_ALLOW_CREDENTIALS,
    allow_methods=MANANA_CORS_ALLOW_METHODS,
    allow_headers=MANANA_CORS_ALLOW_HEADERS,
)


# -- Body size limit ----------------------------------------------------------


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests with bodies exceeding the size limit."""
    content_length = request.headers.get("content-length")
    if content_length is not None and int(content_length) > MANANA_MAX_UPLOAD_BYTES:
        return JSONResponse(status_code=413, content={"detail": "Request body too large"})
    return await call_next(request)


# -- Auth middleware ----------------------------------------------------------


@app.middleware("http")
async def auth_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Require the shared bearer token on non-public paths when one is configured."""
    if (
        not MANANA_SHARED_TOKEN
        or request.method == "OPTIONS"
        or request.url.path in _PUBLIC_PATHS
        or request.url.path.startswith("/docs")
    ):
        return await call_next(request)

    auth_header = request.headers.get("authorization", "")
    token = auth_header[7:].strip() if auth_header.lower().startswith("bearer ") else ""
    if not token:
        return JSONResponse(status_code=401, content={"detail": "Missing authorization token"})
    if not hmac.compare_digest(token, MANANA_SHARED_TOKEN):
        return JSONResponse(status_code=401, content={"detail": "Invalid token"})
    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


def _get_controller(request: Request) -> PipelineController:
    """Dependency: the controller created by the lifespan."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return cast(PipelineController, controller)


Controller = Annotated[PipelineController, Depends(_get_controller)]


def _page_list(controller: PipelineController) -> PageListResponse:
    views = controller.store.views()
    return PageListResponse(pages=[PageSummary.from_view(v) for v in views], total=len(views))


# -- Health -------------------------------------------------------------------


@app.get("/liveness", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


# -- Pages --------------------------------------------------------------------


@app.post("/v1/pages", response_model=PageListResponse)
async def upload_pages(
    controller: Controller,
    files: Annotated[list[UploadFile], File(description="Page images in reading order")],
) -> PageListResponse:
    items: list[tuple[str, bytes, str]] = []
    for f in files:
        data = await f.read()
        if not data:
            raise HTTPException(status_code=400, detail=f"Empty upload: {f.filename}")
        items.append((f.filename or f"page-{len(items) + 1}", data, f.content_type or "image/png"))

    try:
        controller.add_pages(items)
    except RunActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _page_list(controller)


@app.get("/v1/pages", response_model=PageListResponse)
async def list_pages(controller: Controller) -> PageListResponse:
    return _page_list(controller)


@app.get("/v1/pages/{ordinal}/result")
async def page_result(ordinal: int, controller: Controller) -> Response:
    try:
        result = controller.store.result_of(ordinal)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail="Page not found") from e
    if result is None:
        raise HTTPException(status_code=404, detail="Page has no result yet")
    return Response(content=result.image_bytes, media_type=result.mime_type)


@app.delete("/v1/pages/{ordinal}", response_model=PageListResponse)
async def remove_page(ordinal: int, controller: Controller) -> PageListResponse:
    try:
        controller.remove(ordinal)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail="Page not found") from e
    except RunActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _page_list(controller)


@app.delete("/v1/pages", response_model=PageListResponse)
async def clear_pages(controller: Controller) -> PageListResponse:
    controller.clear()
    return _page_list(controller)


@app.post("/v1/pages/reorder", response_model=PageListResponse)
async def reorder_pages(body: ReorderRequest, controller: Controller) -> PageListResponse:
    try:
        controller.reorder(body.order)
    except RunActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _page_list(controller)


@app.post("/v1/pages/sort", response_model=PageListResponse)
async def sort_pages(body: SortRequest, controller: Controller) -> PageListResponse:
    try:
        controller.sort_by_name(descending=body.descending)
    except RunActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _page_list(controller)


@app.post("/v1/pages/{ordinal}/rerun", response_model=AcceptedResponse, status_code=202)
@limiter.limit("30/minute")
async def rerun_page(
    request: Request,
    ordinal: int,
    controller: Controller,
    body: RerunRequest | None = None,
) -> AcceptedResponse:
    mode = body.run.mode if body and body.run else None
    config = body.run.to_config() if body and body.run else None
    try:
        controller.launch_rerun(ordinal, mode=mode, config=config)
    except PageNotFoundError as e:
        raise HTTPException(status_code=404, detail="Page not found") from e
    except RunActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except (InvalidTransitionError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return AcceptedResponse(accepted=True, detail=f"Rerun of page {ordinal + 1} started")


# -- Runs ---------------------------------------------------------------------


@app.post("/v1/runs", response_model=AcceptedResponse, status_code=202)
@limiter.limit("10/minute")
async def start_run(request: Request, body: RunRequest, controller: Controller) -> AcceptedResponse:
    """Start processing every page in the requested mode; progress via /v1/runs/current."""
    try:
        controller.launch(body.mode, body.to_config())
    except RunActiveError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return AcceptedResponse(accepted=True, detail=f"{body.mode.value} run started")


@app.get("/v1/runs/current", response_model=RunStatusResponse)
async def current_run(controller: Controller) -> RunStatusResponse:
    return RunStatusResponse.from_snapshot(controller.snapshot())
