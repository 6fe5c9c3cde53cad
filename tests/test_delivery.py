"""
Tests for access control and page delivery.

Tests cover:
- The access matrix across actor roles
- Free yearbooks
- Unpublished and unknown pages
- Whole-yearbook delivery listing
"""

import asyncio

import pytest

from yearbook_backend.delivery import DeliveryEngine
from yearbook_backend.errors import AccessDenied
from yearbook_backend.models import Actor, DenialReason, DocumentCreate, PageKind


@pytest.fixture
def published(service, document, registry, pdf_artifact):
    """A committed 3-page yearbook: front cover, one content page, back cover."""
    ingested = asyncio.run(service.ingest_page(document.id, pdf_artifact(3), PageKind.CONTENT, "Yearbook"))
    asyncio.run(service.commit_drafts(document.id))
    front, content, back = ingested.pages
    return {"front": front, "content": content, "back": back}


def _deliver(service, page_id, actor):
    return asyncio.run(service.delivery.resolve_page_delivery(page_id, actor))


def test_front_cover_is_public(service, published):
    decision = _deliver(service, published["front"].id, Actor.anonymous())

    assert decision.granted is True
    assert decision.url == published["front"].url
    assert decision.signed is False
    assert decision.watermarked is False


@pytest.mark.parametrize("actor_id, watermarked", [
    ("admin-1", False),
    ("owner-1", False),
    ("viewer-1", True),
])
def test_granted_actors(service, store, registry, published, actor_id, watermarked):
    actor = registry.get_actor(actor_id)

    decision = _deliver(service, published["content"].id, actor)

    assert decision.granted is True
    assert decision.signed is True
    assert decision.watermarked is watermarked
    assert decision.expires_at is not None
    assert store.signed[-1] == {"object_id": published["content"].object_id, "ttl": 3600, "watermark": watermarked}


@pytest.mark.parametrize("actor_id, reason", [
    (None, DenialReason.UNAUTHENTICATED),
    ("stranger", DenialReason.UNAUTHENTICATED),
    ("owner-2", DenialReason.NOT_OWNER),
    ("viewer-2", DenialReason.NOT_PURCHASED),
])
def test_denied_actors(service, store, registry, published, actor_id, reason):
    actor = registry.get_actor(actor_id)

    decision = _deliver(service, published["back"].id, actor)

    assert decision.granted is False
    assert decision.reason == reason
    assert decision.url is None
    assert store.signed == []


def test_free_yearbook_is_open_to_viewers(service, registry, pdf_artifact):
    free = service.create_document(DocumentCreate(owner_id="SCH01", year=2023, title="Springfield High", is_free=True))
    ingested = asyncio.run(service.ingest_page(free.id, pdf_artifact(3), PageKind.CONTENT, "Yearbook"))
    asyncio.run(service.commit_drafts(free.id))

    decision = _deliver(service, ingested.pages[1].id, registry.get_actor("viewer-2"))

    assert decision.granted is True
    assert decision.watermarked is True


def test_draft_pages_hidden_from_viewers(service, registry, published, image_artifact, document):
    ingested = asyncio.run(service.ingest_page(document.id, image_artifact(), PageKind.CONTENT, "Draft"))
    draft = ingested.pages[0]

    assert _deliver(service, draft.id, registry.get_actor("viewer-1")).reason == DenialReason.NOT_FOUND
    assert _deliver(service, draft.id, registry.get_actor("owner-1")).granted is True


def test_unknown_page_is_not_found(service, registry):
    decision = _deliver(service, "missing", registry.get_actor("admin-1"))

    assert decision.granted is False
    assert decision.reason == DenialReason.NOT_FOUND


def test_service_raises_access_denied(service, registry, published):
    with pytest.raises(AccessDenied) as excinfo:
        asyncio.run(service.get_delivery_url(published["content"].id, registry.get_actor("viewer-2")))

    assert excinfo.value.reason == DenialReason.NOT_PURCHASED
    assert excinfo.value.message == "Access denied"
    assert excinfo.value.anonymous is False


def test_anonymous_denial_for_unknown_page(service):
    with pytest.raises(AccessDenied) as excinfo:
        asyncio.run(service.get_delivery_url("missing", Actor.anonymous()))

    assert excinfo.value.reason == DenialReason.NOT_FOUND
    assert excinfo.value.anonymous is True


def test_document_deliveries_in_page_order(service, registry, published, document):
    deliveries = asyncio.run(service.get_document_deliveries(document.id, registry.get_actor("viewer-1")))

    kinds = [decision.page_kind for decision in deliveries.pages]
    assert kinds == [PageKind.FRONT_COVER, PageKind.CONTENT, PageKind.BACK_COVER]
    assert all(decision.granted for decision in deliveries.pages)
    assert [decision.watermarked for decision in deliveries.pages] == [False, True, True]


def test_ttl_is_capped(service):
    engine = DeliveryEngine(service.database, service.store, service.oracle, ttl_seconds=7200, max_ttl_seconds=3600)

    assert engine.ttl_seconds == 3600
