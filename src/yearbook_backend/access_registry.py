from __future__ import annotations

import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .models import Actor, ActorRole, Document


class AccessOracle(ABC):
    """Ownership and purchase answers owned by the auth and payment systems."""

    @abstractmethod
    def has_purchased(self, actor_id: str, owner_id: str, year: int) -> bool:
        pass

    @abstractmethod
    def owns_document(self, actor_id: str, document: Document) -> bool:
        pass


class AccessRegistry(AccessOracle):
    """
    Records actors and yearbook purchases in a local SQLite database.

    Authentication happens upstream; this registry only maps an already
    authenticated actor id to its role and school, and answers the purchase
    and ownership questions the delivery engine asks.
    """

    def __init__(self, db_path: str | Path = "data/yearbooks.db"):
        self.db_path = Path(db_path)
        self._init_db()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS actors (
                    id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    owner_id TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS yearbook_purchases (
                    actor_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    purchased_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (actor_id, owner_id, year)
                )
            """)

    def register_actor(self, actor_id: str, role: ActorRole, owner_id: Optional[str] = None) -> Actor:
        """Insert or replace an actor record."""
        if role is ActorRole.OWNER_ADMIN and not owner_id:
            raise ValueError("owner_admin actors must belong to an owner")

        with self._get_conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO actors (id, role, owner_id, created_at) VALUES (?, ?, ?, ?)",
                (actor_id, role.value, owner_id, datetime.now(timezone.utc).isoformat())
            )
        return Actor(actor_id=actor_id, role=role, owner_id=owner_id)

    def get_actor(self, actor_id: Optional[str]) -> Actor:
        """
        Resolve an actor id to an Actor.

        Unknown or missing ids resolve to the anonymous actor.
        """
        if not actor_id:
            return Actor.anonymous()

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT id, role, owner_id FROM actors WHERE id = ?",
                (actor_id,)
            ).fetchone()

        if not row:
            return Actor.anonymous()
        return Actor(actor_id=row["id"], role=ActorRole(row["role"]), owner_id=row["owner_id"])

    def record_purchase(self, actor_id: str, owner_id: str, year: int) -> None:
        with self._get_conn() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO yearbook_purchases (actor_id, owner_id, year) VALUES (?, ?, ?)",
                (actor_id, owner_id, year)
            )

    def revoke_purchase(self, actor_id: str, owner_id: str, year: int) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute(
                "DELETE FROM yearbook_purchases WHERE actor_id = ? AND owner_id = ? AND year = ?",
                (actor_id, owner_id, year)
            )
            return cursor.rowcount > 0

    def has_purchased(self, actor_id: str, owner_id: str, year: int) -> bool:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM yearbook_purchases WHERE actor_id = ? AND owner_id = ? AND year = ?",
                (actor_id, owner_id, year)
            ).fetchone()
            return row is not None

    def owns_document(self, actor_id: str, document: Document) -> bool:
        actor = self.get_actor(actor_id)
        return actor.role is ActorRole.OWNER_ADMIN and actor.owner_id == document.owner_id
