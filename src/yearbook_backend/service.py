"""
Service facade for the yearbook page subsystem.

This module wires the subsystem together and is its only entry point:
- Yearbook creation and lookup
- Page ingestion from uploaded images and PDFs
- Draft staging, commit and discard
- Page, batch and reorder edits
- Access-controlled page delivery

Every operation returns a pydantic model or raises a YearbookError; any other
exception escaping a component is wrapped into YearbookError here.
"""

from __future__ import annotations

import functools
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional
from uuid import uuid4

from omegaconf import DictConfig

from .access_registry import AccessOracle, AccessRegistry
from .cleanup import BatchCollector
from .configuration import load_config
from .database import YearbookDatabase, utcnow
from .delivery import DeliveryEngine
from .drafts import DraftManager
from .errors import AccessDenied, InvariantViolation, NotFoundError, YearbookError
from .ingestion import Artifact, IngestionPipeline
from .models import (
    Actor,
    BatchDeletion,
    DeliveryDecision,
    Document,
    DocumentCreate,
    DocumentDeliveries,
    DraftResult,
    FrontCover,
    IngestionResult,
    Page,
    PageDeletion,
    PageKind,
)
from .object_store import ObjectStore, S3ObjectStore
from .utils import ensure_directory

logger = logging.getLogger(__name__)


def _boundary(func: Callable[..., Any]) -> Callable[..., Any]:
    """Re-raise unexpected exceptions as YearbookError."""

    if inspect.iscoroutinefunction(func):
        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except YearbookError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception(f"Unexpected failure in {func.__name__}")
                raise YearbookError("Internal error") from exc

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except YearbookError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected failure in {func.__name__}")
            raise YearbookError("Internal error") from exc

    return wrapper


class YearbookService:
    """
    Coordinates the ingestion, draft, delivery and cleanup components.

    Args:
        config: Application config; the packaged defaults when omitted
        store: Object store; an S3ObjectStore built from config when omitted
        oracle: Ownership/purchase oracle; the SQLite AccessRegistry when omitted
    """

    def __init__(
        self,
        config: Optional[DictConfig] = None,
        store: Optional[ObjectStore] = None,
        oracle: Optional[AccessOracle] = None,
    ):
        self.config = config if config is not None else load_config()
        db_path = Path(str(self.config.database.path))

        self.database = YearbookDatabase(db_path)
        self.store = store if store is not None else S3ObjectStore(self.config.object_store)
        self.oracle = oracle if oracle is not None else AccessRegistry(db_path)
        self.upload_root = ensure_directory(Path(str(self.config.uploads.upload_dir)))

        self.collector = BatchCollector(self.database, self.store)
        self.pipeline = IngestionPipeline(
            self.database,
            self.store,
            self.collector,
            root_folder=str(self.config.object_store.root_folder),
        )
        self.drafts = DraftManager(self.database, self.store, self.collector)
        self.delivery = DeliveryEngine(
            self.database,
            self.store,
            self.oracle,
            ttl_seconds=int(self.config.delivery.signed_url_ttl_seconds),
            max_ttl_seconds=int(self.config.delivery.max_ttl_seconds),
        )

    def _require_document(self, document_id: str) -> Document:
        document = self.database.get_document(document_id)
        if document is None:
            raise NotFoundError("Yearbook not found")
        return document

    # Yearbooks

    @_boundary
    def create_document(self, payload: DocumentCreate) -> Document:
        if self.database.get_document_by_owner_and_year(payload.owner_id, payload.year):
            raise InvariantViolation("A yearbook already exists for this school and year")

        document = Document(
            id=str(uuid4()),
            owner_id=payload.owner_id,
            year=payload.year,
            title=payload.title,
            is_free=payload.is_free,
            price=payload.price,
            created_at=utcnow(),
        )
        logger.info(f"Created yearbook {document.id} for {payload.owner_id}/{payload.year}")
        return self.database.create_document(document)

    @_boundary
    def get_document(self, document_id: str) -> Document:
        return self._require_document(document_id)

    @_boundary
    def list_pages(self, document_id: str) -> List[Page]:
        self._require_document(document_id)
        return self.database.list_pages(document_id)

    @_boundary
    def get_front_cover(self, document_id: str) -> FrontCover:
        document = self._require_document(document_id)
        return FrontCover(
            document_id=document.id,
            owner_id=document.owner_id,
            year=document.year,
            title=document.title,
            front_cover_url=document.front_cover_url,
            detected_aspect_ratio=document.detected_aspect_ratio,
        )

    # Ingestion and edits

    @_boundary
    async def ingest_page(self, document_id: str, artifact: Artifact, page_kind: PageKind, title: str) -> IngestionResult:
        return await self.pipeline.ingest(document_id, artifact, page_kind, title)

    @_boundary
    async def delete_page(self, page_id: str) -> PageDeletion:
        return await self.drafts.delete_page(page_id)

    @_boundary
    async def delete_batch(self, batch_id: str) -> BatchDeletion:
        return await self.drafts.delete_batch(batch_id)

    @_boundary
    def reorder_page(self, page_id: str, sequence: int) -> Page:
        return self.drafts.reorder_page(page_id, sequence)

    # Drafts

    @_boundary
    def set_draft_covers(
        self,
        document_id: str,
        front_url: Optional[str] = None,
        back_url: Optional[str] = None,
        front_object_id: Optional[str] = None,
        back_object_id: Optional[str] = None,
    ) -> Document:
        return self.drafts.set_draft_covers(document_id, front_url, back_url, front_object_id, back_object_id)

    @_boundary
    async def commit_drafts(self, document_id: str) -> DraftResult:
        return await self.drafts.commit(document_id)

    @_boundary
    async def discard_drafts(self, document_id: str) -> DraftResult:
        return await self.drafts.discard(document_id)

    @_boundary
    def touch_autosave(self, document_id: str, is_auto_save: bool = True) -> Document:
        return self.drafts.touch_autosave(document_id, is_auto_save)

    # Delivery

    @_boundary
    async def get_delivery_url(self, page_id: str, actor: Actor) -> DeliveryDecision:
        """
        Deliver one page to an actor.

        Raises:
            AccessDenied: The actor may not receive the page (including
                unknown pages, reported as not_found)
        """
        decision = await self.delivery.resolve_page_delivery(page_id, actor)
        if not decision.granted:
            raise AccessDenied(decision.reason, anonymous=actor.is_anonymous)
        return decision

    @_boundary
    async def get_document_deliveries(self, document_id: str, actor: Actor) -> DocumentDeliveries:
        return await self.delivery.resolve_document_delivery(document_id, actor)
