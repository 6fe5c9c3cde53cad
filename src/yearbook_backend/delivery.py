"""
Access control and delivery of yearbook pages.

Each request is decided by one ordered procedure; the first matching rule
wins:

1. The front cover is public and served from its plain URL.
2. Platform admins get a signed URL.
3. Admins of the owning school get a signed URL.
4. Viewers who bought the yearbook (or any viewer of a free yearbook) get a
   signed, watermarked URL.
5. Everyone else is denied, with the reason recorded on the decision.

Signed URLs are minted per request and never cached.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Tuple

from .access_registry import AccessOracle
from .database import YearbookDatabase, utcnow
from .errors import NotFoundError
from .models import (
    Actor,
    ActorRole,
    DeliveryDecision,
    DenialReason,
    Document,
    DocumentDeliveries,
    Page,
    PageKind,
    PageStatus,
)
from .object_store import ObjectStore

logger = logging.getLogger(__name__)

# Front cover first, back cover last, content pages by sequence in between
_KIND_ORDER = {PageKind.FRONT_COVER: 0, PageKind.CONTENT: 1, PageKind.BACK_COVER: 2}


class DeliveryEngine:
    def __init__(
        self,
        database: YearbookDatabase,
        store: ObjectStore,
        oracle: AccessOracle,
        ttl_seconds: int = 3600,
        max_ttl_seconds: int = 3600,
    ):
        self.database = database
        self.store = store
        self.oracle = oracle
        self.ttl_seconds = max(1, min(int(ttl_seconds), int(max_ttl_seconds)))

    def _is_owner(self, document: Document, actor: Actor) -> bool:
        return (
            actor.role is ActorRole.OWNER_ADMIN
            and bool(actor.actor_id)
            and self.oracle.owns_document(actor.actor_id, document)
        )

    def _tier(self, document: Document, actor: Actor) -> Tuple[Optional[DenialReason], bool]:
        """Return (denial reason, watermark) for a protected page."""
        if actor.role is ActorRole.PLATFORM_ADMIN:
            return None, False
        if self._is_owner(document, actor):
            return None, False
        if actor.role is ActorRole.PURCHASING_VIEWER and actor.actor_id:
            if document.is_free or self.oracle.has_purchased(actor.actor_id, document.owner_id, document.year):
                return None, True
            return DenialReason.NOT_PURCHASED, False

        if actor.is_anonymous:
            return DenialReason.UNAUTHENTICATED, False
        return DenialReason.NOT_OWNER, False

    async def resolve_delivery(self, document: Document, page: Page, actor: Actor) -> DeliveryDecision:
        """
        Decide how (and whether) a page is delivered to an actor.

        Args:
            document: The yearbook the page belongs to
            page: The page being requested
            actor: The requesting identity

        Returns:
            A granted decision carrying the URL, or a denial with its reason
        """
        if page.page_kind is PageKind.FRONT_COVER:
            return DeliveryDecision(
                page_id=page.id,
                sequence=page.sequence,
                page_kind=page.page_kind,
                granted=True,
                url=page.url,
            )

        reason, watermark = self._tier(document, actor)
        if reason is not None:
            logger.info(f"Denied page {page.id} to {actor.role.value}: {reason.value}")
            return DeliveryDecision.deny(reason, page)

        if not page.object_id:
            logger.warning(f"Page {page.id} has no stored object")
            return DeliveryDecision.deny(DenialReason.NOT_FOUND, page)

        url = await self.store.mint_signed_url(page.object_id, self.ttl_seconds, watermark=watermark)
        return DeliveryDecision(
            page_id=page.id,
            sequence=page.sequence,
            page_kind=page.page_kind,
            granted=True,
            url=url,
            signed=True,
            watermarked=watermark,
            expires_at=utcnow() + timedelta(seconds=self.ttl_seconds),
        )

    async def resolve_page_delivery(self, page_id: str, actor: Actor) -> DeliveryDecision:
        """Look up a page and decide its delivery; unknown ids are denied as not found."""
        page = self.database.get_page(page_id)
        if page is None:
            return DeliveryDecision.deny(DenialReason.NOT_FOUND)

        document = self.database.get_document(page.document_id)
        if document is None:
            return DeliveryDecision.deny(DenialReason.NOT_FOUND)

        if page.status is not PageStatus.PUBLISHED and page.page_kind is not PageKind.FRONT_COVER:
            if actor.role is not ActorRole.PLATFORM_ADMIN and not self._is_owner(document, actor):
                return DeliveryDecision.deny(DenialReason.NOT_FOUND)

        return await self.resolve_delivery(document, page, actor)

    async def resolve_document_delivery(self, document_id: str, actor: Actor) -> DocumentDeliveries:
        """
        Decide delivery for every published page of a yearbook, in page order.

        Raises:
            NotFoundError: The yearbook does not exist
        """
        document = self.database.get_document(document_id)
        if document is None:
            raise NotFoundError("Yearbook not found")

        pages = sorted(
            self.database.list_published_pages(document_id),
            key=lambda page: (_KIND_ORDER[page.page_kind], page.sequence),
        )
        decisions = []
        for page in pages:
            decisions.append(await self.resolve_delivery(document, page, actor))

        return DocumentDeliveries(
            document_id=document.id,
            owner_id=document.owner_id,
            year=document.year,
            title=document.title,
            pages=decisions,
        )
