"""Authoritative page-keyed state backed by the metadata mirror and bulk store."""

import logging
from typing import Dict, Iterable, List, Optional

from .errors import PersistenceError
from .models import NormalizedRecord, StoredEntry, utcnow
from .storage import MetadataStore, PayloadStore

logger = logging.getLogger(__name__)


class PageDataStore:
    """Map page ids to their current record.

    Metadata is available right after construction (payloads replaced by
    ``PayloadElsewhere``); full payloads arrive through
    ``load_page_data_from_db`` or ``initialize_from_db``.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        payloads: PayloadStore,
        page_ids: Iterable[str],
    ):
        self.metadata = metadata
        self.payloads = payloads
        self.page_ids: List[str] = list(page_ids)
        self._pages: Dict[str, Optional[NormalizedRecord]] = {
            page_id: None for page_id in self.page_ids
        }
        self._pages.update(metadata.load())

    def get_page_data(self, page_id: str) -> Optional[NormalizedRecord]:
        return self._pages.get(page_id)

    def pages(self) -> Dict[str, Optional[NormalizedRecord]]:
        return dict(self._pages)

    async def set_page_data(self, page_id: str, record: Optional[NormalizedRecord]) -> bool:
        """Persist ``record`` as the current record of ``page_id``.

        Returns False, leaving in-memory state untouched, when the bulk write
        fails. ``None`` clears the page.
        """
        if record is None:
            return await self.clear_page_data(page_id)

        storage_key = StoredEntry.key_for(page_id, record.id)
        entry = StoredEntry(
            storage_key=storage_key,
            page_id=page_id,
            record=record,
            created_at=record.ingested_at,
            updated_at=utcnow(),
        )
        try:
            self.payloads.put(entry)
        except PersistenceError:
            logger.exception("Failed to store data for page %s", page_id)
            return False

        try:
            self.metadata.save(page_id, record, storage_key)
        except PersistenceError as exc:
            logger.warning("Metadata mirror not updated for page %s: %s", page_id, exc)

        self._pages[page_id] = record
        logger.info("Stored data for page %s (%s)", page_id, storage_key)
        return True

    async def clear_page_data(self, page_id: str) -> bool:
        # Mirror first: a mirror entry must never outlive its bulk rows.
        previous = self.metadata.entry(page_id)
        try:
            self.metadata.remove(page_id)
        except PersistenceError:
            logger.exception("Failed to clear metadata for page %s", page_id)
            return False
        try:
            removed = self.payloads.delete_page(page_id)
        except PersistenceError:
            logger.exception("Failed to clear data for page %s", page_id)
            self._restore_mirror(page_id, previous)
            return False
        self._pages[page_id] = None
        logger.info("Cleared data for page %s (%d rows)", page_id, removed)
        return True

    async def load_page_data_from_db(self, page_id: str) -> Optional[NormalizedRecord]:
        """Replace the in-memory record of ``page_id`` with its newest bulk row."""
        try:
            entry = self.payloads.latest(page_id)
        except PersistenceError:
            logger.exception("Failed to retrieve data for page %s", page_id)
            return None
        if entry is None:
            logger.info("No stored data for page %s", page_id)
            self._pages[page_id] = None
            try:
                self.metadata.remove(page_id)
            except PersistenceError as exc:
                logger.warning("Stale metadata for page %s not removed: %s", page_id, exc)
            return None
        self._pages[page_id] = entry.record
        return entry.record

    def _restore_mirror(self, page_id: str, previous: Optional[dict]) -> None:
        if previous is None:
            return
        try:
            self.metadata.restore(page_id, previous)
        except PersistenceError as exc:
            logger.warning("Metadata for page %s could not be restored: %s", page_id, exc)

    async def initialize_from_db(self) -> Dict[str, Optional[NormalizedRecord]]:
        for page_id in dict.fromkeys(self.page_ids + list(self._pages)):
            try:
                await self.load_page_data_from_db(page_id)
            except Exception as exc:
                logger.warning("Could not load page %s from the payload store: %s", page_id, exc)
        return self.pages()

    async def clear_all_data(self) -> bool:
        try:
            self.metadata.clear()
            self.payloads.clear()
        except PersistenceError:
            logger.exception("Failed to clear all data")
            return False
        self._pages = {page_id: None for page_id in self.page_ids}
        logger.info("Cleared all stored data")
        return True

    def get_all_stored_pages(self) -> List[str]:
        try:
            return self.payloads.page_ids()
        except PersistenceError:
            logger.exception("Failed to list stored pages")
            return []

    def get_storage_info(self) -> Dict[str, int]:
        total_records = 0
        total_size = 0
        for page_id in self.get_all_stored_pages():
            try:
                entry = self.payloads.latest(page_id)
            except PersistenceError:
                logger.exception("Failed to read page %s for storage info", page_id)
                continue
            if entry is not None:
                total_records += entry.record.metadata.total_records
                total_size += entry.record.byte_size
        return {"total_records": total_records, "total_size": total_size}
