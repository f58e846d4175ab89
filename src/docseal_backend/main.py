from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .cleanup import CleanupScheduler
from .configuration import ServiceSettings, load_settings
from .exceptions import DocSealError, RateLimited, ToolFailure, ValidationError
from .hashing import HashingService
from .logging_config import setup_logging
from .models import (
    FileSummary,
    FinalizeResult,
    HashRequest,
    HashResponse,
    MessageResponse,
    MetadataUpdate,
    SecurityRequest,
)
from .path_guard import PathGuard
from .pipeline import DocumentPipeline
from .process_runner import ProcessRunner
from .rate_limit import RateLimiter, RateLimitMiddleware, client_identity
from .registry import FileRegistry
from .tools import ToolCommands
from .upload_gate import UploadGate
from .utils import sanitize_label, split_extension

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one application instance owns."""

    settings: ServiceSettings
    guard: PathGuard
    registry: FileRegistry
    pipeline: DocumentPipeline
    gate: UploadGate
    upload_limiter: RateLimiter
    request_limiter: RateLimiter
    scheduler: CleanupScheduler


def build_services(settings: ServiceSettings, runner: Optional[ProcessRunner] = None) -> Services:
    guard = PathGuard(settings.storage.sandbox_dir)
    registry = FileRegistry(guard)
    upload_limiter = RateLimiter(settings.rate_limits.upload_max, settings.rate_limits.upload_window_seconds)
    request_limiter = RateLimiter(settings.rate_limits.general_max, settings.rate_limits.general_window_seconds)
    pipeline = DocumentPipeline(
        registry=registry,
        guard=guard,
        runner=runner or ProcessRunner(timeout=settings.tools.timeout_seconds),
        hasher=HashingService(),
        commands=ToolCommands(
            sanitizer=settings.tools.sanitizer,
            metadata_writer=settings.tools.metadata_writer,
            encryptor=settings.tools.encryptor,
        ),
        max_concurrent=settings.uploads.max_concurrent,
        default_author=settings.uploads.default_author,
    )
    return Services(
        settings=settings,
        guard=guard,
        registry=registry,
        pipeline=pipeline,
        gate=UploadGate(guard, upload_limiter, max_bytes=settings.uploads.max_bytes),
        upload_limiter=upload_limiter,
        request_limiter=request_limiter,
        scheduler=CleanupScheduler(
            registry,
            interval_seconds=settings.cleanup.interval_seconds,
            max_age_seconds=settings.cleanup.max_age_seconds,
            limiters=(upload_limiter, request_limiter),
        ),
    )


router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_pipeline(services: Services = Depends(get_services)) -> DocumentPipeline:
    return services.pipeline


def get_upload_gate(services: Services = Depends(get_services)) -> UploadGate:
    return services.gate


def _http_error(request: Request, exc: DocSealError, status_code: Optional[int] = None) -> HTTPException:
    """Translate a domain error; production responses only name the error class."""
    settings: ServiceSettings = request.app.state.services.settings
    detail = type(exc).__name__ if settings.is_production else exc.message
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return HTTPException(status_code=status_code or exc.status_code, detail=detail, headers=headers)


def _content_disposition(filename: str) -> str:
    """ASCII fallback name plus the RFC 5987 form of the original name."""
    stem, extension = split_extension(filename)
    fallback = f"{sanitize_label(stem, 'document')}{extension or '.pdf'}"
    return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quote(stem + extension)}"


@router.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/api/upload", response_model=FileSummary)
async def upload_file(
    request: Request,
    file: Optional[UploadFile] = File(None),
    author: str = Form(""),
    gate: UploadGate = Depends(get_upload_gate),
    pipeline: DocumentPipeline = Depends(get_pipeline),
) -> FileSummary:
    try:
        if file is None:
            raise ValidationError("No file uploaded.")
        handle = await gate.admit(file, client_identity(request))
        return await pipeline.ingest(handle, author=author)
    except ToolFailure as exc:
        raise _http_error(request, exc, status_code=400) from exc
    except DocSealError as exc:
        raise _http_error(request, exc) from exc


@router.get("/api/files", response_model=List[FileSummary])
def list_files(pipeline: DocumentPipeline = Depends(get_pipeline)) -> List[FileSummary]:
    return pipeline.registry.list_files()


@router.get("/api/files/{file_id}", response_model=FileSummary)
def get_file(file_id: str, request: Request, pipeline: DocumentPipeline = Depends(get_pipeline)) -> FileSummary:
    try:
        return pipeline.registry.get(file_id)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc


@router.delete("/api/files/{file_id}")
def delete_file(file_id: str, request: Request, pipeline: DocumentPipeline = Depends(get_pipeline)) -> Dict[str, str]:
    try:
        pipeline.delete(file_id)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc
    return {"status": "deleted"}


@router.post("/api/metadata/{file_id}", response_model=FileSummary)
async def save_metadata(
    file_id: str,
    payload: MetadataUpdate,
    request: Request,
    pipeline: DocumentPipeline = Depends(get_pipeline),
) -> FileSummary:
    try:
        return await pipeline.save_metadata(file_id, payload.metadata)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc


@router.post("/api/finalize/{file_id}", response_model=FinalizeResult)
async def finalize_file(file_id: str, request: Request, pipeline: DocumentPipeline = Depends(get_pipeline)) -> FinalizeResult:
    try:
        return await pipeline.finalize(file_id)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc


@router.get("/api/download/{file_id}")
async def download_file(file_id: str, request: Request, pipeline: DocumentPipeline = Depends(get_pipeline)) -> StreamingResponse:
    try:
        record, stream = await pipeline.open_download(file_id)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc
    return StreamingResponse(
        stream,
        media_type="application/pdf",
        headers={"Content-Disposition": _content_disposition(record.name)},
        background=BackgroundTask(stream.aclose),
    )


@router.post("/api/hash/{file_id}", response_model=HashResponse)
async def hash_file(
    file_id: str,
    payload: HashRequest,
    request: Request,
    pipeline: DocumentPipeline = Depends(get_pipeline),
) -> HashResponse:
    try:
        record, digest = await pipeline.hash_document(file_id, payload.algorithm, payload.scope)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc
    return HashResponse(hash=digest, name=record.name)


@router.post("/api/security/{file_id}", response_model=MessageResponse)
async def security_action(
    file_id: str,
    payload: SecurityRequest,
    request: Request,
    pipeline: DocumentPipeline = Depends(get_pipeline),
) -> MessageResponse:
    """Diagnostic flag toggles; real protection is applied by finalize."""
    try:
        message = await pipeline.apply_security_action(file_id, payload.action)
    except DocSealError as exc:
        raise _http_error(request, exc) from exc
    return MessageResponse(message=message)


def create_app(settings: Optional[ServiceSettings] = None, runner: Optional[ProcessRunner] = None) -> FastAPI:
    """
    Build a fully wired application.

    Args:
        settings: Validated settings; loaded from the environment when omitted
        runner: Tool runner override (tests inject a fake)
    """
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    services = build_services(settings, runner)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await services.scheduler.start()
        try:
            yield
        finally:
            await services.scheduler.stop()

    application = FastAPI(title="DocSeal API", version="0.1.0", lifespan=lifespan)
    application.state.services = services

    application.add_middleware(RateLimitMiddleware, limiter=services.request_limiter)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        detail = "InternalError" if settings.is_production else f"Internal error: {exc}"
        return JSONResponse(status_code=500, content={"detail": detail})

    application.include_router(router)
    logger.info(f"DocSeal API ready (sandbox: {services.guard.root}, environment: {settings.environment})")
    return application


app = create_app()
