"""
Cascade cleanup of ingestion batch sources.

A multi-page PDF is kept in the object store after its pages are extracted.
Once the last page of its batch is hard-deleted, the collector removes the
PDF and then the batch record.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Optional

from .database import YearbookDatabase
from .models import Page, PageStatus
from .object_store import ObjectStore

logger = logging.getLogger(__name__)

_BATCH_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def new_batch_id() -> str:
    """Return a readable batch id of the form ``pdf-<epoch-ms>-<random7>``."""
    suffix = "".join(secrets.choice(_BATCH_SUFFIX_ALPHABET) for _ in range(7))
    return f"pdf-{int(time.time() * 1000)}-{suffix}"


class BatchCollector:
    def __init__(self, database: YearbookDatabase, store: ObjectStore):
        self.database = database
        self.store = store

    async def page_deleted(self, page: Page) -> bool:
        """
        Run after a page row has been removed.

        Returns:
            True if the page's batch source was released by this call
        """
        if not page.batch_id:
            return False

        remaining = self.database.count_pages_by_batch(page.batch_id)
        if remaining > 0:
            logger.debug(f"Batch {page.batch_id} still has {remaining} page(s)")
            return False

        batch = self.database.get_batch(page.batch_id)
        if batch is None:
            # Already collected by an earlier call.
            return False

        if not await self.store.delete(batch.source_object_id):
            logger.error(f"Could not delete source document of batch {batch.id}; keeping batch record for retry")
            return False

        self.database.delete_batch(batch.id)
        logger.info(f"Batch {batch.id} emptied; source document deleted")
        return True

    async def release_page(self, page: Page, expected_status: Optional[PageStatus] = None) -> bool:
        """
        Hard-delete a page: release its object, remove the row, run the cascade.

        The object is released before the row so a crash leaves a row that can
        be deleted again. The object is kept while another row still points at it.

        Returns:
            False if the row was already gone or no longer in expected_status
        """
        current = self.database.get_page(page.id)
        if current is None:
            logger.info(f"Page {page.id} already removed")
            await self.page_deleted(page)
            return False
        if expected_status is not None and current.status is not expected_status:
            logger.info(f"Page {page.id} is {current.status.value}, not {expected_status.value}; skipped")
            return False

        if current.object_id and self.database.count_pages_by_object(current.object_id) <= 1:
            await self.store.delete(current.object_id)

        deleted = self.database.delete_page(current.id, expected_status=expected_status)
        await self.page_deleted(current)
        return deleted
