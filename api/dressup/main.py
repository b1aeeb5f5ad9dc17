from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Optional, TypeVar

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .compositing import BackdropLibrary, BackgroundCompositor, preview_media_type
from .config import (
    CORS_ALLOW_ORIGIN_REGEX,
    CORS_ALLOW_ORIGINS,
    LOG_FORMAT,
    LOG_LEVEL,
    REQUEST_TIMEOUT_SECONDS,
    SERVICE_VERSION,
)
from .cv import PreprocessingOrchestrator, PreprocessOptions
from .metrics import increment, observe_latency, snapshot
from .schemas import (
    BackdropCatalogue,
    build_preprocess_failure,
    build_preprocess_response,
)

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.5
HTTP_CLIENT_CLOSED_REQUEST = 499


app = FastAPI(
    title="Dressup Preprocessing API",
    version=SERVICE_VERSION,
    description="Background removal, garment segmentation and backdrop compositing for try-on images.",
)

if CORS_ALLOW_ORIGIN_REGEX is None and CORS_ALLOW_ORIGINS == ["*"]:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Compositing", "X-Backdrop", "X-Process-Time"],
    )


_BACKDROP_LIBRARY: Optional[BackdropLibrary] = None


def get_backdrop_library() -> BackdropLibrary:
    global _BACKDROP_LIBRARY
    if _BACKDROP_LIBRARY is None:
        _BACKDROP_LIBRARY = BackdropLibrary()
    return _BACKDROP_LIBRARY


def get_orchestrator() -> PreprocessingOrchestrator:
    return PreprocessingOrchestrator()


def get_compositor(library: BackdropLibrary = Depends(get_backdrop_library)) -> BackgroundCompositor:
    return BackgroundCompositor(library=library)


async def run_cancellable(request: Request, work: Awaitable[T], timeout: float) -> T:
    """Await ``work`` as its own task; cancel it on client disconnect or timeout."""
    task = asyncio.ensure_future(work)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if task in done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected; cancelling %s", request.url.path)
                raise HTTPException(status_code=HTTP_CLIENT_CLOSED_REQUEST, detail="Client closed request.")
            if loop.time() >= deadline:
                logger.warning("%s exceeded %.0fs; cancelling", request.url.path, timeout)
                raise HTTPException(
                    status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                    detail="Processing timed out. Please retry.",
                )
    finally:
        if not task.done():
            task.cancel()


@app.middleware("http")
async def log_and_measure_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    label = f"{request.method} {request.url.path}"
    increment("requests_total", label)
    observe_latency("http_request_seconds", label, duration)
    response.headers["X-Process-Time"] = f"{duration:.3f}s"
    logger.info("%s %s -> %s (%.3fs)", request.method, request.url.path, response.status_code, duration)
    return response


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/metrics")
async def metrics():
    return JSONResponse(status_code=status.HTTP_200_OK, content=snapshot())


@app.post("/preprocess")
async def preprocess(
    request: Request,
    person: UploadFile = File(...),
    garment: UploadFile = File(...),
    garment_type: str = Form(default="completeOutfit"),
    remove_person_background: bool = Form(default=True),
    remove_garment_background: bool = Form(default=True),
    segment_garment: bool = Form(default=True),
    segmentation_mode: str = Form(default="full-image"),
    output_format: str = Form(default="PNG"),
    debug: bool = Form(default=False),
    debug_images: bool = Form(default=False),
    orchestrator: PreprocessingOrchestrator = Depends(get_orchestrator),
):
    person_bytes = await person.read()
    garment_bytes = await garment.read()
    if not person_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="person is empty.")
    if not garment_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="garment is empty.")

    try:
        options = PreprocessOptions(
            remove_person_background=remove_person_background,
            remove_garment_background=remove_garment_background,
            segment_garment=segment_garment,
            garment_type=garment_type,
            segmentation_mode=segmentation_mode,
            output_format=output_format,
            include_debug=debug or debug_images,
            include_debug_images=debug_images,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    bundle = await run_cancellable(
        request,
        orchestrator.run(person_bytes, garment_bytes, options),
        REQUEST_TIMEOUT_SECONDS,
    )
    if not bundle.success:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=build_preprocess_failure(bundle).model_dump(),
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=build_preprocess_response(bundle).model_dump(),
    )


@app.post("/composite")
async def composite(
    request: Request,
    image: UploadFile = File(...),
    backdrop: str = Form(default="flat-fill"),
    compositor: BackgroundCompositor = Depends(get_compositor),
):
    image_bytes = await image.read()
    if not image_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="image is empty.")

    result = await run_cancellable(
        request, compositor.composite(image_bytes, backdrop), REQUEST_TIMEOUT_SECONDS
    )
    if not result.success:
        # Callers show the uncomposited result instead.
        logger.warning("Compositing failed, returning original image: %s", result.error)
        return Response(
            content=image_bytes,
            media_type=image.content_type or "application/octet-stream",
            headers={"X-Compositing": "fallback"},
        )
    return Response(
        content=result.encode("PNG"),
        media_type="image/png",
        headers={"X-Compositing": "applied", "X-Backdrop": result.backdrop_used or ""},
    )


@app.get("/backdrops")
async def list_backdrops(library: BackdropLibrary = Depends(get_backdrop_library)):
    catalogue = BackdropCatalogue.model_validate({"backdrops": library.catalogue()})
    return JSONResponse(status_code=status.HTTP_200_OK, content=catalogue.model_dump())


@app.get("/backdrops/{name}/preview")
async def backdrop_preview(name: str, library: BackdropLibrary = Depends(get_backdrop_library)):
    data = library.preview(name)
    if data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No preview for {name}.")
    return Response(content=data, media_type=preview_media_type(data))
