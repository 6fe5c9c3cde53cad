"""
Page ingestion pipeline.

Turns an uploaded artifact into draft pages of a yearbook:
- a single raster image becomes one page
- a PDF is rasterized page by page into one batch; for content uploads the
  first and last pages become the front and back covers

Any failure once remote objects exist rolls back every page row and object
created by the call before a single IngestionError is raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple
from uuid import uuid4

from PIL import Image, UnidentifiedImageError

from .cleanup import BatchCollector, new_batch_id
from .database import YearbookDatabase, utcnow
from .errors import IngestionError, InvariantViolation, NotFoundError, SourceDocumentUnreadable
from .models import AccessMode, Document, IngestionBatch, IngestionResult, Page, PageKind, PageStatus
from .object_store import MultiPageUpload, ObjectStore
from .utils import aspect_ratio, build_folder_path, is_paginated_source

logger = logging.getLogger(__name__)

COVER_TITLES = {
    PageKind.FRONT_COVER: "Front Cover",
    PageKind.BACK_COVER: "Back Cover",
}

# Document fields staged (url, object id) and published for each cover kind
DRAFT_COVER_FIELDS = {
    PageKind.FRONT_COVER: ("draft_front_cover_url", "draft_front_cover_object_id"),
    PageKind.BACK_COVER: ("draft_back_cover_url", "draft_back_cover_object_id"),
}
PUBLISHED_COVER_FIELDS = {
    PageKind.FRONT_COVER: "front_cover_url",
    PageKind.BACK_COVER: "back_cover_url",
}


@dataclass
class Artifact:
    """A locally stored upload awaiting ingestion."""

    path: Path
    filename: str
    content_type: Optional[str] = None


def inspect_image(path: Path) -> Optional[str]:
    """
    Check that a file is a raster image and return its aspect ratio.

    Raises:
        SourceDocumentUnreadable: Pillow cannot identify the file
    """
    try:
        with Image.open(path) as image:
            width, height = image.size
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise SourceDocumentUnreadable("Uploaded file is not a readable image") from exc
    return aspect_ratio(width, height)


class IngestionPipeline:
    def __init__(
        self,
        database: YearbookDatabase,
        store: ObjectStore,
        collector: BatchCollector,
        root_folder: str = "yearbuk_uploads",
    ):
        self.database = database
        self.store = store
        self.collector = collector
        self.root_folder = root_folder

    async def ingest(self, document_id: str, artifact: Artifact, page_kind: PageKind, title: str) -> IngestionResult:
        """
        Ingest one uploaded artifact into a yearbook.

        Args:
            document_id: Target yearbook
            artifact: Local file plus its original name and content type
            page_kind: Kind of page the caller is adding
            title: Page title; cover pages derive their titles from it

        Returns:
            IngestionResult listing the created pages

        Raises:
            NotFoundError: The yearbook does not exist
            SourceDocumentUnreadable: The artifact is neither an image nor a PDF
            InvariantViolation: A content PDF was sent to a non-empty yearbook
            RemoteStoreUnavailable: The upload itself failed (nothing left behind)
            IngestionError: A later step failed and was rolled back
        """
        document = self._require_document(document_id)
        folder = build_folder_path(self.root_folder, document.title, document.owner_id, document.year)

        if is_paginated_source(artifact.filename, artifact.content_type):
            return await self._ingest_paginated(document, artifact, page_kind, title, folder)
        return await self._ingest_image(document, artifact, page_kind, title, folder)

    def _require_document(self, document_id: str) -> Document:
        document = self.database.get_document(document_id)
        if document is None:
            raise NotFoundError("Yearbook not found")
        return document

    async def _ingest_image(
        self,
        document: Document,
        artifact: Artifact,
        page_kind: PageKind,
        title: str,
        folder: str,
    ) -> IngestionResult:
        ratio = inspect_image(artifact.path)
        access_mode = AccessMode.PUBLIC if page_kind is PageKind.FRONT_COVER else AccessMode.AUTHENTICATED

        uploaded = await self.store.upload(artifact.path, folder, access_mode=access_mode, content_type=artifact.content_type)
        logger.info(f"Uploaded {page_kind.value} image for yearbook {document.id}")

        created: List[Page] = []
        try:
            if page_kind.is_cover:
                page, replaced = await self._add_cover(
                    document.id,
                    page_kind,
                    title or COVER_TITLES[page_kind],
                    uploaded.secure_url,
                    uploaded.object_id,
                    ratio,
                    batch_id=None,
                    created=created,
                )
                return IngestionResult(
                    message="Cover replaced" if replaced else "Cover uploaded",
                    pages=[page],
                    cover_replaced=replaced,
                )

            page = self._create_page(
                document.id,
                sequence=self.database.next_sequence(document.id),
                title=title or "Untitled page",
                url=uploaded.secure_url,
                object_id=uploaded.object_id,
                page_kind=PageKind.CONTENT,
                created=created,
            )
            self.database.update_document(document.id, has_unsaved_drafts=True)
            return IngestionResult(message="Page uploaded", pages=[page])
        except Exception as exc:
            await self._rollback(created, [uploaded.object_id], batch_id=None)
            raise IngestionError("Failed to ingest uploaded image") from exc

    async def _ingest_paginated(
        self,
        document: Document,
        artifact: Artifact,
        page_kind: PageKind,
        title: str,
        folder: str,
    ) -> IngestionResult:
        if page_kind is PageKind.CONTENT:
            live = self.database.list_pages(document.id, statuses=[PageStatus.DRAFT, PageStatus.PUBLISHED])
            if live:
                raise InvariantViolation("Multi-page uploads are only accepted for an empty yearbook")

        public_indexes = () if page_kind is PageKind.BACK_COVER else (0,)
        upload = await self.store.upload_multi_page_document(artifact.path, folder, public_indexes=public_indexes)
        logger.info(f"Extracted {len(upload.pages)} page(s) for yearbook {document.id}")

        created: List[Page] = []
        batch_id: Optional[str] = None
        try:
            batch = self.database.create_batch(IngestionBatch(
                id=new_batch_id(),
                document_id=document.id,
                source_object_id=upload.source_object_id,
                created_at=utcnow(),
            ))
            batch_id = batch.id

            if page_kind is PageKind.CONTENT:
                return self._create_content_batch(document, upload, batch_id, created)
            return await self._create_cover_from_batch(document, upload, page_kind, title, batch_id, created)
        except Exception as exc:
            object_ids = [page.object_id for page in upload.pages] + [upload.source_object_id]
            await self._rollback(created, object_ids, batch_id=batch_id)
            raise IngestionError("Failed to ingest uploaded document") from exc

    def _create_content_batch(
        self,
        document: Document,
        upload: MultiPageUpload,
        batch_id: str,
        created: List[Page],
    ) -> IngestionResult:
        total = len(upload.pages)
        first_sequence = self.database.next_sequence(document.id)

        for uploaded in upload.pages:
            index = uploaded.page_index
            if index == 0:
                page_kind, sequence, title = PageKind.FRONT_COVER, 0, COVER_TITLES[PageKind.FRONT_COVER]
            elif index == total - 1:
                page_kind, sequence, title = PageKind.BACK_COVER, 0, COVER_TITLES[PageKind.BACK_COVER]
            else:
                page_kind, sequence = PageKind.CONTENT, first_sequence + index - 1
                title = f"Page {sequence}"

            self._create_page(
                document.id,
                sequence=sequence,
                title=title,
                url=uploaded.secure_url,
                object_id=uploaded.object_id,
                page_kind=page_kind,
                batch_id=batch_id,
                created=created,
            )

        front = upload.pages[0]
        fields = {
            "draft_front_cover_url": front.secure_url,
            "draft_front_cover_object_id": front.object_id,
            "detected_aspect_ratio": front.aspect_ratio,
            "has_unsaved_drafts": True,
        }
        if total >= 2:
            back = upload.pages[-1]
            fields["draft_back_cover_url"] = back.secure_url
            fields["draft_back_cover_object_id"] = back.object_id
        self.database.update_document(document.id, **fields)

        logger.info(f"Created {len(created)} draft page(s) in batch {batch_id}")
        return IngestionResult(
            message=f"{len(created)} pages uploaded",
            pages=list(created),
            batch_id=batch_id,
            covers_auto_assigned=True,
        )

    async def _create_cover_from_batch(
        self,
        document: Document,
        upload: MultiPageUpload,
        page_kind: PageKind,
        title: str,
        batch_id: str,
        created: List[Page],
    ) -> IngestionResult:
        if page_kind is PageKind.FRONT_COVER:
            keep = upload.pages[0]
            cover_title = f"{title} - Cover" if title else COVER_TITLES[page_kind]
        else:
            keep = upload.pages[-1]
            cover_title = f"{title} - Back Cover" if title else COVER_TITLES[page_kind]

        await self.store.delete_many(page.object_id for page in upload.pages if page is not keep)

        page, replaced = await self._add_cover(
            document.id,
            page_kind,
            cover_title,
            keep.secure_url,
            keep.object_id,
            keep.aspect_ratio,
            batch_id=batch_id,
            created=created,
        )
        return IngestionResult(
            message="Cover replaced" if replaced else "Cover uploaded",
            pages=[page],
            batch_id=batch_id,
            cover_replaced=replaced,
        )

    async def _add_cover(
        self,
        document_id: str,
        page_kind: PageKind,
        title: str,
        url: str,
        object_id: str,
        ratio: Optional[str],
        batch_id: Optional[str],
        created: List[Page],
    ) -> Tuple[Page, bool]:
        """
        Replace any cover of the same kind and add the new one.

        A replaced cover that was live (published, or published and pending
        deletion) makes the new cover published at once without touching the
        dirty flag. Otherwise the new cover is a draft and is staged on the
        yearbook.

        Returns:
            The new cover page and whether an older cover was replaced
        """
        existing = self.database.list_pages(document_id, page_kind=page_kind)
        immediate = any(page.status is not PageStatus.DRAFT for page in existing)
        for old in existing:
            await self.collector.release_page(old)
        if existing:
            logger.info(f"Replaced {len(existing)} {page_kind.value} page(s) on yearbook {document_id}")

        page = self._create_page(
            document_id,
            sequence=0,
            title=title,
            url=url,
            object_id=object_id,
            page_kind=page_kind,
            status=PageStatus.PUBLISHED if immediate else PageStatus.DRAFT,
            batch_id=batch_id,
            created=created,
        )

        document = self._require_document(document_id)
        url_field, object_field = DRAFT_COVER_FIELDS[page_kind]
        fields = {}
        if page_kind is PageKind.FRONT_COVER:
            fields["detected_aspect_ratio"] = ratio

        if immediate:
            fields[PUBLISHED_COVER_FIELDS[page_kind]] = url
            stale = getattr(document, object_field)
            if stale and stale != object_id:
                fields[url_field] = None
                fields[object_field] = None
        else:
            stale = getattr(document, object_field)
            fields[url_field] = url
            fields[object_field] = object_id
            fields["has_unsaved_drafts"] = True

        self.database.update_document(document_id, **fields)

        if stale and stale != object_id and self.database.count_pages_by_object(stale) == 0:
            await self.store.delete(stale)
        return page, bool(existing)

    def _create_page(
        self,
        document_id: str,
        sequence: int,
        title: str,
        url: str,
        object_id: str,
        page_kind: PageKind,
        created: List[Page],
        status: PageStatus = PageStatus.DRAFT,
        batch_id: Optional[str] = None,
    ) -> Page:
        page = self.database.create_page(Page(
            id=str(uuid4()),
            document_id=document_id,
            sequence=sequence,
            title=title,
            url=url,
            object_id=object_id,
            page_kind=page_kind,
            status=status,
            batch_id=batch_id,
            created_at=utcnow(),
        ))
        created.append(page)
        return page

    async def _rollback(self, created: List[Page], object_ids: List[str], batch_id: Optional[str]) -> None:
        """Remove every row and object an ingestion created, continuing past failures."""
        logger.error(f"Ingestion failed; rolling back {len(created)} page(s) and {len(object_ids)} object(s)")

        for page in created:
            try:
                self.database.delete_page(page.id)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Rollback could not delete page {page.id}: {exc}")

        await self.store.delete_many(object_ids)

        if batch_id:
            try:
                self.database.delete_batch(batch_id)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Rollback could not delete batch {batch_id}: {exc}")
