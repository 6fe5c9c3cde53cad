from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PageKind(str, Enum):
    FRONT_COVER = "front_cover"
    BACK_COVER = "back_cover"
    CONTENT = "content"

    @property
    def is_cover(self) -> bool:
        return self is not PageKind.CONTENT


class PageStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    DRAFT_DELETED = "draft_deleted"


class AccessMode(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"


class ActorRole(str, Enum):
    PLATFORM_ADMIN = "platform_admin"
    OWNER_ADMIN = "owner_admin"
    PURCHASING_VIEWER = "purchasing_viewer"
    ANONYMOUS = "anonymous"


class DenialReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NOT_PURCHASED = "not_purchased"
    NOT_OWNER = "not_owner"
    NOT_FOUND = "not_found"


class Document(BaseModel):
    id: str
    owner_id: str
    year: int
    title: str
    is_free: bool = False
    price: Optional[str] = None
    front_cover_url: Optional[str] = None
    back_cover_url: Optional[str] = None
    draft_front_cover_url: Optional[str] = None
    draft_back_cover_url: Optional[str] = None
    # Internal store keys, never serialized into API responses.
    draft_front_cover_object_id: Optional[str] = Field(default=None, exclude=True)
    draft_back_cover_object_id: Optional[str] = Field(default=None, exclude=True)
    detected_aspect_ratio: Optional[str] = None
    has_unsaved_drafts: bool = False
    last_draft_saved: Optional[datetime] = None
    last_auto_saved: Optional[datetime] = None
    created_at: datetime

    @property
    def has_draft_covers(self) -> bool:
        return bool(self.draft_front_cover_url or self.draft_back_cover_url)


class Page(BaseModel):
    id: str
    document_id: str
    sequence: int
    title: str
    url: str
    object_id: Optional[str] = Field(default=None, exclude=True)
    page_kind: PageKind
    status: PageStatus
    batch_id: Optional[str] = None
    created_at: datetime


class IngestionBatch(BaseModel):
    id: str
    document_id: str
    source_object_id: str
    created_at: datetime


class Actor(BaseModel):
    """Requesting identity, already authenticated upstream."""

    model_config = ConfigDict(frozen=True)

    actor_id: Optional[str] = None
    role: ActorRole = ActorRole.ANONYMOUS
    owner_id: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "Actor":
        return cls()

    @property
    def is_anonymous(self) -> bool:
        return self.role is ActorRole.ANONYMOUS or not self.actor_id


class DeliveryDecision(BaseModel):
    page_id: Optional[str] = None
    sequence: Optional[int] = None
    page_kind: Optional[PageKind] = None
    granted: bool
    url: Optional[str] = None
    signed: bool = False
    watermarked: bool = False
    expires_at: Optional[datetime] = None
    reason: Optional[DenialReason] = None

    @classmethod
    def deny(cls, reason: DenialReason, page: Optional[Page] = None) -> "DeliveryDecision":
        return cls(
            page_id=page.id if page else None,
            sequence=page.sequence if page else None,
            page_kind=page.page_kind if page else None,
            granted=False,
            reason=reason,
        )


class DocumentCreate(BaseModel):
    owner_id: str = Field(min_length=1)
    year: int = Field(ge=1900, le=2100)
    title: str = Field(min_length=1)
    is_free: bool = False
    price: Optional[str] = None


class DocumentDeliveries(BaseModel):
    document_id: str
    owner_id: str
    year: int
    title: str
    pages: List[DeliveryDecision]


class FrontCover(BaseModel):
    document_id: str
    owner_id: str
    year: int
    title: str
    front_cover_url: Optional[str] = None
    detected_aspect_ratio: Optional[str] = None


class IngestionResult(BaseModel):
    message: str
    pages: List[Page]
    batch_id: Optional[str] = None
    covers_auto_assigned: bool = False
    cover_replaced: bool = False


class DraftResult(BaseModel):
    document_id: str
    changed: bool
    message: str
    pages_published: int = 0
    pages_removed: int = 0
    pages_restored: int = 0


class PageDeletion(BaseModel):
    page_id: str
    soft: bool
    message: str


class BatchDeletion(BaseModel):
    batch_id: str
    deleted_count: int
    message: str


class DraftCoversUpdate(BaseModel):
    front_cover_url: Optional[str] = None
    back_cover_url: Optional[str] = None


class ReorderRequest(BaseModel):
    sequence: int = Field(ge=1)


class AutoSaveRequest(BaseModel):
    is_auto_save: bool = True
