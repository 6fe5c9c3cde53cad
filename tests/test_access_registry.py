"""
Tests for the actor and purchase registry.
"""

import sqlite3

import pytest

from yearbook_backend.access_registry import AccessRegistry
from yearbook_backend.models import ActorRole, Document
from yearbook_backend.database import utcnow


@pytest.fixture
def access_registry(tmp_path):
    return AccessRegistry(tmp_path / "registry.db")


def _document(owner_id="SCH01"):
    return Document(id="yb-1", owner_id=owner_id, year=2024, title="Springfield High", created_at=utcnow())


def test_unknown_actor_is_anonymous(access_registry):
    assert access_registry.get_actor("nobody").role == ActorRole.ANONYMOUS
    assert access_registry.get_actor(None).actor_id is None


def test_owner_admin_requires_owner(access_registry):
    with pytest.raises(ValueError):
        access_registry.register_actor("owner-x", ActorRole.OWNER_ADMIN)


def test_ownership(access_registry):
    access_registry.register_actor("owner-1", ActorRole.OWNER_ADMIN, owner_id="SCH01")
    access_registry.register_actor("viewer-1", ActorRole.PURCHASING_VIEWER)

    assert access_registry.owns_document("owner-1", _document()) is True
    assert access_registry.owns_document("owner-1", _document("SCH02")) is False
    assert access_registry.owns_document("viewer-1", _document()) is False


def test_purchases(access_registry):
    access_registry.record_purchase("viewer-1", "SCH01", 2024)
    access_registry.record_purchase("viewer-1", "SCH01", 2024)

    assert access_registry.has_purchased("viewer-1", "SCH01", 2024) is True
    assert access_registry.has_purchased("viewer-1", "SCH01", 2023) is False

    assert access_registry.revoke_purchase("viewer-1", "SCH01", 2024) is True
    assert access_registry.has_purchased("viewer-1", "SCH01", 2024) is False


def test_connections_are_closed(access_registry, monkeypatch):
    opened = []
    real_connect = sqlite3.connect

    def tracking_connect(*args, **kwargs):
        conn = real_connect(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(sqlite3, "connect", tracking_connect)
    access_registry.record_purchase("viewer-1", "SCH01", 2024)

    assert access_registry.has_purchased("viewer-1", "SCH01", 2024) is True
    assert len(opened) == 2
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
