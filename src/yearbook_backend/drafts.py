"""
Draft and publish state of a yearbook.

A yearbook is dirty while it has draft pages, pages marked for deletion,
staged cover URLs or its unsaved-drafts flag set. Commit publishes all of
that at once and discard throws it away. Both are safe to re-run: every
step only touches rows still in the state the step expects, and the dirty
flag is cleared last.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .cleanup import BatchCollector
from .database import YearbookDatabase, utcnow
from .errors import InvariantViolation, NotFoundError
from .ingestion import DRAFT_COVER_FIELDS, PUBLISHED_COVER_FIELDS
from .models import BatchDeletion, Document, DraftResult, Page, PageDeletion, PageKind, PageStatus
from .object_store import ObjectStore

logger = logging.getLogger(__name__)

_PENDING_STATUSES = (PageStatus.DRAFT, PageStatus.DRAFT_DELETED)

_CLEARED_DRAFT_COVERS = {
    "draft_front_cover_url": None,
    "draft_front_cover_object_id": None,
    "draft_back_cover_url": None,
    "draft_back_cover_object_id": None,
}


class DraftManager:
    def __init__(self, database: YearbookDatabase, store: ObjectStore, collector: BatchCollector):
        self.database = database
        self.store = store
        self.collector = collector

    def _require_document(self, document_id: str) -> Document:
        document = self.database.get_document(document_id)
        if document is None:
            raise NotFoundError("Yearbook not found")
        return document

    def _require_page(self, page_id: str) -> Page:
        page = self.database.get_page(page_id)
        if page is None:
            raise NotFoundError("Page not found")
        return page

    @staticmethod
    def _is_dirty(document: Document, pending: List[Page]) -> bool:
        return document.has_unsaved_drafts or document.has_draft_covers or bool(pending)

    def set_draft_covers(
        self,
        document_id: str,
        front_url: Optional[str] = None,
        back_url: Optional[str] = None,
        front_object_id: Optional[str] = None,
        back_object_id: Optional[str] = None,
    ) -> Document:
        """Stage cover URLs without touching the published covers."""
        self._require_document(document_id)

        fields = {"has_unsaved_drafts": True}
        if front_url is not None:
            fields["draft_front_cover_url"] = front_url
            fields["draft_front_cover_object_id"] = front_object_id
        if back_url is not None:
            fields["draft_back_cover_url"] = back_url
            fields["draft_back_cover_object_id"] = back_object_id

        logger.info(f"Staged draft covers for yearbook {document_id}")
        return self.database.update_document(document_id, **fields)

    def _front_cover_after_commit(self, document: Document, pending: List[Page]) -> bool:
        if document.draft_front_cover_url:
            return True

        fronts = self.database.list_pages(document.id, page_kind=PageKind.FRONT_COVER)
        if any(page.status is not PageStatus.DRAFT_DELETED for page in fronts):
            return True

        removed_urls = {page.url for page in pending if page.status is PageStatus.DRAFT_DELETED}
        return bool(document.front_cover_url) and document.front_cover_url not in removed_urls

    async def commit(self, document_id: str) -> DraftResult:
        """
        Publish every pending change of a yearbook.

        Raises:
            NotFoundError: The yearbook does not exist
            InvariantViolation: The yearbook would be left without a front cover
        """
        document = self._require_document(document_id)
        pending = self.database.list_pages(document_id, statuses=_PENDING_STATUSES)

        if not self._is_dirty(document, pending):
            return DraftResult(document_id=document_id, changed=False, message="No unsaved changes")

        if not self._front_cover_after_commit(document, pending):
            raise InvariantViolation("A front cover is required before publishing")

        fields = dict(_CLEARED_DRAFT_COVERS)
        if document.draft_front_cover_url:
            fields["front_cover_url"] = document.draft_front_cover_url
        if document.draft_back_cover_url:
            fields["back_cover_url"] = document.draft_back_cover_url
        self.database.update_document(document_id, **fields)

        removed = 0
        for page in pending:
            if page.status is not PageStatus.DRAFT_DELETED:
                continue
            if await self.collector.release_page(page, expected_status=PageStatus.DRAFT_DELETED):
                removed += 1
            self._forget_cover(page)

        published = self.database.update_pages_status(document_id, PageStatus.DRAFT, PageStatus.PUBLISHED)

        self.database.update_document(document_id, has_unsaved_drafts=False, last_draft_saved=utcnow())
        logger.info(f"Committed yearbook {document_id}: {published} published, {removed} removed")
        return DraftResult(
            document_id=document_id,
            changed=True,
            message="Drafts published",
            pages_published=published,
            pages_removed=removed,
        )

    async def discard(self, document_id: str) -> DraftResult:
        """Throw away every pending change of a yearbook."""
        document = self._require_document(document_id)
        pending = self.database.list_pages(document_id, statuses=_PENDING_STATUSES)

        if not self._is_dirty(document, pending):
            return DraftResult(document_id=document_id, changed=False, message="No unsaved changes")

        removed = 0
        released = set()
        for page in pending:
            if page.status is not PageStatus.DRAFT:
                continue
            if await self.collector.release_page(page, expected_status=PageStatus.DRAFT):
                removed += 1
            released.add(page.object_id)

        restored = self.database.update_pages_status(document_id, PageStatus.DRAFT_DELETED, PageStatus.PUBLISHED)

        document = self._require_document(document_id)
        staged = [document.draft_front_cover_object_id, document.draft_back_cover_object_id]
        self.database.update_document(document_id, **_CLEARED_DRAFT_COVERS)
        for object_id in staged:
            if object_id and object_id not in released and self.database.count_pages_by_object(object_id) == 0:
                await self.store.delete(object_id)

        self.database.update_document(document_id, has_unsaved_drafts=False, last_auto_saved=None)
        logger.info(f"Discarded drafts of yearbook {document_id}: {removed} removed, {restored} restored")
        return DraftResult(
            document_id=document_id,
            changed=True,
            message="Drafts discarded",
            pages_removed=removed,
            pages_restored=restored,
        )

    def touch_autosave(self, document_id: str, is_auto_save: bool = True) -> Document:
        """Stamp the auto-save or manual-save time; dirty state is left alone."""
        self._require_document(document_id)
        field = "last_auto_saved" if is_auto_save else "last_draft_saved"
        return self.database.update_document(document_id, **{field: utcnow()})

    async def delete_page(self, page_id: str) -> PageDeletion:
        """
        Delete a page.

        Published pages are only marked for deletion until the next commit;
        draft pages and pages already marked are removed at once.
        """
        page = self._require_page(page_id)

        if page.status is PageStatus.PUBLISHED:
            if self.database.set_page_status(page.id, PageStatus.PUBLISHED, PageStatus.DRAFT_DELETED):
                self.database.update_document(page.document_id, has_unsaved_drafts=True)
            return PageDeletion(page_id=page.id, soft=True, message="Page marked for deletion")

        await self.collector.release_page(page)
        self._forget_cover(page)
        return PageDeletion(page_id=page.id, soft=False, message="Page deleted")

    async def delete_batch(self, batch_id: str) -> BatchDeletion:
        """Remove every page of an ingestion batch, whatever its status."""
        pages = self.database.list_pages_by_batch(batch_id)
        if not pages:
            raise NotFoundError("Batch not found")

        deleted = 0
        for page in pages:
            if await self.collector.release_page(page):
                deleted += 1
            self._forget_cover(page)

        logger.info(f"Deleted {deleted} page(s) of batch {batch_id}")
        return BatchDeletion(batch_id=batch_id, deleted_count=deleted, message=f"{deleted} pages deleted")

    def reorder_page(self, page_id: str, sequence: int) -> Page:
        """
        Move a content page to a new sequence number.

        Raises:
            InvariantViolation: Not a content page, or the number is in use
        """
        page = self._require_page(page_id)
        if page.page_kind is not PageKind.CONTENT:
            raise InvariantViolation("Only content pages can be reordered")
        if sequence < 1:
            raise InvariantViolation("Page numbers start at 1")
        if self.database.sequence_taken(page.document_id, sequence, exclude_page_id=page.id):
            raise InvariantViolation(f"Page number {sequence} is already in use")

        updated = self.database.update_page(page.id, page_number=sequence)
        self.database.update_document(page.document_id, has_unsaved_drafts=True)
        return updated

    def _forget_cover(self, page: Page) -> None:
        """Clear yearbook cover fields that still point at a removed cover page."""
        if not page.page_kind.is_cover:
            return

        document = self.database.get_document(page.document_id)
        if document is None:
            return

        fields = {}
        url_field, object_field = DRAFT_COVER_FIELDS[page.page_kind]
        if page.object_id and getattr(document, object_field) == page.object_id:
            fields[url_field] = None
            fields[object_field] = None
        published_field = PUBLISHED_COVER_FIELDS[page.page_kind]
        if getattr(document, published_field) == page.url:
            fields[published_field] = None

        if fields:
            self.database.update_document(document.id, **fields)
