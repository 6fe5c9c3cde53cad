from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .access_registry import AccessRegistry
from .configuration import configure_logging, load_config
from .errors import (
    AccessDenied,
    IngestionError,
    InvariantViolation,
    NotFoundError,
    RemoteStoreUnavailable,
    SourceDocumentUnreadable,
    YearbookError,
)
from .ingestion import Artifact
from .models import (
    Actor,
    AutoSaveRequest,
    BatchDeletion,
    DeliveryDecision,
    Document,
    DocumentCreate,
    DocumentDeliveries,
    DraftCoversUpdate,
    DraftResult,
    FrontCover,
    IngestionResult,
    Page,
    PageDeletion,
    PageKind,
    ReorderRequest,
)
from .service import YearbookService
from .utils import ensure_directory

config = load_config()
configure_logging(config)

app = FastAPI(title="Yearbook Pages API", version="0.1.0")

allowed_origins = list(config.api.allowed_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

service = YearbookService(config)

ALLOWED_SUFFIXES = {".pdf", ".jpg", ".jpeg", ".png", ".webp", ".gif"}

_ERROR_STATUS = {
    NotFoundError: 404,
    SourceDocumentUnreadable: 400,
    InvariantViolation: 409,
    RemoteStoreUnavailable: 503,
    IngestionError: 503,
}


def get_service() -> YearbookService:
    return service


def get_actor(
    authorization: Optional[str] = Header(None),
    manager: YearbookService = Depends(get_service),
) -> Actor:
    """Resolve ``Authorization: Bearer <actor_id>`` to a registered actor."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return Actor.anonymous()
    if not isinstance(manager.oracle, AccessRegistry):
        return Actor.anonymous()
    return manager.oracle.get_actor(authorization[7:].strip())


@app.exception_handler(YearbookError)
async def handle_yearbook_error(request: Request, exc: YearbookError) -> JSONResponse:
    if isinstance(exc, AccessDenied):
        # Anonymous callers get the same answer whether or not the page exists.
        if exc.anonymous:
            return JSONResponse(status_code=401, content={"detail": "Authentication required"})
        return JSONResponse(status_code=403, content={"detail": "Access denied"})

    status_code = next((code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)), 500)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/yearbooks", response_model=Document, status_code=201)
def create_yearbook(payload: DocumentCreate, manager: YearbookService = Depends(get_service)) -> Document:
    return manager.create_document(payload)


@app.get("/yearbooks/{document_id}", response_model=Document)
def get_yearbook(document_id: str, manager: YearbookService = Depends(get_service)) -> Document:
    return manager.get_document(document_id)


@app.get("/yearbooks/{document_id}/pages", response_model=List[Page])
def list_pages(document_id: str, manager: YearbookService = Depends(get_service)) -> List[Page]:
    return manager.list_pages(document_id)


@app.get("/yearbooks/{document_id}/front-cover", response_model=FrontCover)
def get_front_cover(document_id: str, manager: YearbookService = Depends(get_service)) -> FrontCover:
    return manager.get_front_cover(document_id)


def _sanitize_filename(filename: str) -> str:
    stem = Path(filename).stem or "upload"
    suffix = Path(filename).suffix.lower()
    safe_stem = "".join(char if char.isalnum() or char in "-_" else "-" for char in stem)
    safe_stem = safe_stem.strip("-_") or "upload"
    if suffix not in ALLOWED_SUFFIXES:
        suffix = ""
    return f"{safe_stem}{suffix}"


async def _store_upload(file: UploadFile, manager: YearbookService) -> Path:
    upload_dir = ensure_directory(manager.upload_root / uuid4().hex)
    destination = upload_dir / _sanitize_filename(file.filename or "upload")
    max_bytes = int(manager.config.uploads.max_upload_bytes)

    written = 0
    with destination.open("wb") as buffer:
        while chunk := await file.read(8 * 1024 * 1024):
            written += len(chunk)
            if written > max_bytes:
                break
            buffer.write(chunk)
    await file.close()

    if written > max_bytes:
        shutil.rmtree(upload_dir, ignore_errors=True)
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    return destination


@app.post("/yearbooks/{document_id}/pages", response_model=IngestionResult, status_code=201)
async def upload_page(
    document_id: str,
    file: UploadFile = File(...),
    page_kind: PageKind = Form(PageKind.CONTENT),
    title: str = Form(""),
    manager: YearbookService = Depends(get_service),
) -> IngestionResult:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Upload must have a filename")

    stored = await _store_upload(file, manager)
    artifact = Artifact(path=stored, filename=file.filename, content_type=file.content_type)
    try:
        return await manager.ingest_page(document_id, artifact, page_kind, title)
    finally:
        shutil.rmtree(stored.parent, ignore_errors=True)


@app.delete("/pages/{page_id}", response_model=PageDeletion)
async def delete_page(page_id: str, manager: YearbookService = Depends(get_service)) -> PageDeletion:
    return await manager.delete_page(page_id)


@app.patch("/pages/{page_id}/reorder", response_model=Page)
def reorder_page(page_id: str, payload: ReorderRequest, manager: YearbookService = Depends(get_service)) -> Page:
    return manager.reorder_page(page_id, payload.sequence)


@app.delete("/batches/{batch_id}", response_model=BatchDeletion)
async def delete_batch(batch_id: str, manager: YearbookService = Depends(get_service)) -> BatchDeletion:
    return await manager.delete_batch(batch_id)


@app.put("/yearbooks/{document_id}/draft-covers", response_model=Document)
def set_draft_covers(
    document_id: str,
    payload: DraftCoversUpdate,
    manager: YearbookService = Depends(get_service),
) -> Document:
    return manager.set_draft_covers(document_id, front_url=payload.front_cover_url, back_url=payload.back_cover_url)


@app.post("/yearbooks/{document_id}/publish-drafts", response_model=DraftResult)
async def publish_drafts(document_id: str, manager: YearbookService = Depends(get_service)) -> DraftResult:
    return await manager.commit_drafts(document_id)


@app.post("/yearbooks/{document_id}/discard-drafts", response_model=DraftResult)
async def discard_drafts(document_id: str, manager: YearbookService = Depends(get_service)) -> DraftResult:
    return await manager.discard_drafts(document_id)


@app.patch("/yearbooks/{document_id}/auto-save", response_model=Document)
def auto_save(
    document_id: str,
    payload: Optional[AutoSaveRequest] = None,
    manager: YearbookService = Depends(get_service),
) -> Document:
    is_auto_save = payload.is_auto_save if payload is not None else True
    return manager.touch_autosave(document_id, is_auto_save)


@app.get("/pages/{page_id}/delivery", response_model=DeliveryDecision)
async def get_page_delivery(
    page_id: str,
    actor: Actor = Depends(get_actor),
    manager: YearbookService = Depends(get_service),
) -> DeliveryDecision:
    return await manager.get_delivery_url(page_id, actor)


@app.get("/yearbooks/{document_id}/deliveries", response_model=DocumentDeliveries)
async def get_deliveries(
    document_id: str,
    actor: Actor = Depends(get_actor),
    manager: YearbookService = Depends(get_service),
) -> DocumentDeliveries:
    return await manager.get_document_deliveries(document_id, actor)
