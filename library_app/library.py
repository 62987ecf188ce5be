import logging
from datetime import datetime
from typing import Callable, Optional

from library_app.borrowing import BorrowingLedger
from library_app.catalog import CatalogStore
from library_app.config import Settings, settings as default_settings
from library_app.database import Database, utcnow
from library_app.services.cover_storage import CoverStorage
from library_app.shelves import ShelfAllocator

logger = logging.getLogger(__name__)


class Library:
    """Wires the catalog, shelves, borrowing ledger and cover storage to one database.

    Entry points (the API app factory, the CLI) build one instance and pass
    it down; there is no module-level instance.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        covers: Optional[CoverStorage] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.db = Database(db_file or self.settings.database_file, busy_timeout=self.settings.database_busy_timeout)
        self.db.initialize_database()

        self.catalog = CatalogStore(self.db, clock=clock)
        self.shelves = ShelfAllocator(self.db, self.catalog, clock=clock)
        self.ledger = BorrowingLedger(
            self.db,
            self.catalog,
            loan_period_days=self.settings.loan_period_days,
            clock=clock,
            fine_daily_rate=self.settings.fine_daily_rate,
        )
        self.covers = covers or CoverStorage.from_settings(self.settings)

    # ------------------------- Covers ------------------------- #
    def resolve_cover(self, item_id: int) -> Optional[str]:
        """Stored cover URL, else the first object found in the bucket by id or ISBN."""
        item = self.catalog.get_item(item_id)
        if item.cover_url:
            return item.cover_url
        return self.covers.find_available_cover(item.id, item.isbn)

    def upload_cover(self, item_id: int, content: bytes, filename: str, content_type: str) -> str:
        item = self.catalog.get_item(item_id)
        url = self.covers.upload_cover(content, filename, content_type, item_id=item.id, isbn=item.isbn)
        self.catalog.update_item(item.id, {"cover_url": url})
        return url

    # ------------------------- Dashboard ------------------------- #
    def get_statistics(self) -> dict:
        return self.catalog.get_statistics()

    def close(self) -> None:
        """Release the HTTP client held by cover storage."""
        self.covers.close()
