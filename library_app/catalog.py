import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from library_app.database import Database, fits_integer, to_db_timestamp, utcnow
from library_app.errors import CapacityError, ConflictError, NotFoundError, ValidationError
from library_app.models import Item, ItemKind, BorrowingStatus, OPEN_STATUSES
from library_app.schemas import ItemCreate, ItemUpdate, parse_input

logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    "title": "title COLLATE NOCASE",
    "author": "author COLLATE NOCASE",
    "created_at": "created_at",
    "id": "id",
    "available_copies": "available_copies",
}
_UPDATABLE = ("title", "author", "publisher", "genre", "publication_year", "cover_url")


class CatalogStore:
    """Books and journals, and the counter of copies on the shelf.

    ``adjust_availability`` is the only code path that writes
    ``available_copies``; everything else that needs to move the counter
    (borrowing, returning, changing the number of copies) goes through it.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    # ------------------------- Core operations ------------------------- #
    def create_item(self, payload: Any) -> Item:
        """Validate ``payload`` and add a new item with every copy available."""
        data: ItemCreate = parse_input(ItemCreate, payload)
        now = to_db_timestamp(self.clock())
        with self.db.transaction() as conn:
            self._ensure_identifier_free(conn, data)
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO items (
                        kind, title, author, publisher, isbn, issn, genre,
                        publication_year, cover_url, total_copies, available_copies,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data.kind.value, data.title, data.author, data.publisher,
                        data.isbn, data.issn, data.genre, data.publication_year,
                        data.cover_url, data.total_copies, data.total_copies, now, now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Item could not be added: {e}") from e
            item = self._fetch_item(conn, cursor.lastrowid)
        logger.info(f"Item created: id={item.id}, kind={item.kind}, copies={item.total_copies}")
        return item

    def get_item(self, item_id: int, conn: Optional[sqlite3.Connection] = None) -> Item:
        if conn is not None:
            return self._fetch_item(conn, item_id)
        with self.db.connection() as own:
            return self._fetch_item(own, item_id)

    def adjust_availability(self, item_id: int, delta: int, conn: Optional[sqlite3.Connection] = None) -> Item:
        """Apply ``available_copies += delta`` atomically.

        Joins the caller's transaction when ``conn`` is given, so a borrow or
        return can pair the counter change with its own write.
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("delta must be an integer.")
        with self.db.transaction(conn) as tx:
            item = self._fetch_item(tx, item_id)
            new_value = item.available_copies + delta
            if new_value < 0 or new_value > item.total_copies:
                logger.warning(
                    f"Availability change rejected: item={item_id}, "
                    f"available={item.available_copies}, delta={delta}, total={item.total_copies}"
                )
                if new_value < 0:
                    raise CapacityError(f"No copies of item {item_id} are available.")
                raise CapacityError(
                    f"Item {item_id} cannot have more than {item.total_copies} copies available."
                )
            updated_at = self.clock()
            tx.execute(
                "UPDATE items SET available_copies = ?, updated_at = ? WHERE id = ?",
                (new_value, to_db_timestamp(updated_at), item_id),
            )
            item.available_copies = new_value
            item.updated_at = updated_at
            return item

    def delete_item(self, item_id: int) -> Item:
        """Remove an item. Refused while any copy is out on loan."""
        with self.db.transaction() as conn:
            item = self._fetch_item(conn, item_id)
            open_loans = conn.execute(
                f"SELECT COUNT(*) FROM borrowings WHERE item_id = ? AND status IN ({_placeholders(OPEN_STATUSES)})",
                (item_id, *OPEN_STATUSES),
            ).fetchone()[0]
            if open_loans:
                logger.warning(f"Refusing to delete item {item_id}: {open_loans} open borrowing(s)")
                raise ConflictError(f"Item {item_id} has {open_loans} active borrowing(s).")
            conn.execute(
                "DELETE FROM borrowings WHERE item_id = ? AND status = ?",
                (item_id, BorrowingStatus.RETURNED.value),
            )
            conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
        logger.info(f"Item deleted: id={item_id}")
        return item

    def update_item(self, item_id: int, update: Any) -> Item:
        """Edit item metadata and, optionally, the number of copies owned.

        The number of copies on loan stays constant: growing or shrinking
        ``total_copies`` moves ``available_copies`` by the same amount.
        """
        data: ItemUpdate = parse_input(ItemUpdate, update)
        changes = data.changes()
        if not changes:
            raise ValidationError("Nothing to update.")

        with self.db.transaction() as conn:
            item = self._fetch_item(conn, item_id)
            new_total = changes.pop("total_copies", None)
            now = to_db_timestamp(self.clock())

            if new_total is not None and new_total != item.total_copies:
                if new_total < item.loaned_copies:
                    raise CapacityError(
                        f"Item {item_id} has {item.loaned_copies} copies on loan; "
                        f"total cannot drop to {new_total}."
                    )
                delta = new_total - item.total_copies
                if delta < 0:
                    self.adjust_availability(item_id, delta, conn=conn)
                    conn.execute("UPDATE items SET total_copies = ? WHERE id = ?", (new_total, item_id))
                else:
                    conn.execute("UPDATE items SET total_copies = ? WHERE id = ?", (new_total, item_id))
                    self.adjust_availability(item_id, delta, conn=conn)

            fields = {k: v for k, v in changes.items() if k in _UPDATABLE}
            if fields:
                assignments = ", ".join(f"{k} = ?" for k in fields)
                conn.execute(
                    f"UPDATE items SET {assignments}, updated_at = ? WHERE id = ?",
                    (*fields.values(), now, item_id),
                )
            else:
                conn.execute("UPDATE items SET updated_at = ? WHERE id = ?", (now, item_id))
            return self._fetch_item(conn, item_id)

    # ------------------------- Queries ------------------------- #
    def list_items(
        self,
        kind: Optional[str] = None,
        query: Optional[str] = None,
        shelf_id: Optional[int] = None,
        unplaced: bool = False,
        sort_by: str = "title",
        order: str = "asc",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Item]:
        if sort_by not in _SORT_COLUMNS:
            raise ValidationError(f"Invalid sort_by. Allowed: {', '.join(_SORT_COLUMNS)}")
        if order not in ("asc", "desc"):
            raise ValidationError("Invalid order. Allowed: asc, desc")
        where, params = self._filters(kind, query, shelf_id, unplaced)
        sql = f"SELECT * FROM items{where} ORDER BY {_SORT_COLUMNS[sort_by]} {order.upper()}, id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        with self.db.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Item.from_row(row) for row in rows]

    def count_items(
        self,
        kind: Optional[str] = None,
        query: Optional[str] = None,
        shelf_id: Optional[int] = None,
        unplaced: bool = False,
    ) -> int:
        where, params = self._filters(kind, query, shelf_id, unplaced)
        with self.db.connection() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM items{where}", params).fetchone()[0]

    def find_by_identifier(self, identifier: str) -> Optional[Item]:
        """Look up an item by ISBN or ISSN, ignoring dashes and spaces."""
        cleaned = "".join(ch for ch in identifier if ch.isalnum()).upper()
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM items WHERE isbn = ? OR REPLACE(issn, '-', '') = ?",
                (cleaned, cleaned),
            ).fetchone()
        return Item.from_row(row) if row else None

    def get_statistics(self) -> Dict[str, Any]:
        """Counters for the admin dashboard."""
        with self.db.connection() as conn:
            items = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_items,
                    COALESCE(SUM(kind = 'book'), 0) AS total_books,
                    COALESCE(SUM(kind = 'journal'), 0) AS total_journals,
                    COUNT(DISTINCT author) AS unique_authors,
                    COALESCE(SUM(total_copies), 0) AS total_copies,
                    COALESCE(SUM(available_copies), 0) AS available_copies,
                    COALESCE(SUM(shelf_id IS NOT NULL), 0) AS placed_items
                FROM items
                """
            ).fetchone()
            shelves = conn.execute(
                "SELECT COUNT(*) AS total_shelves, COALESCE(SUM(capacity), 0) AS shelf_capacity FROM shelves"
            ).fetchone()
            loans = {
                row["status"]: row["n"]
                for row in conn.execute("SELECT status, COUNT(*) AS n FROM borrowings GROUP BY status")
            }
        stats = dict(items)
        stats.update(dict(shelves))
        stats["active_borrowings"] = loans.get(BorrowingStatus.ACTIVE.value, 0)
        stats["overdue_borrowings"] = loans.get(BorrowingStatus.OVERDUE.value, 0)
        stats["returned_borrowings"] = loans.get(BorrowingStatus.RETURNED.value, 0)
        return stats

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch_item(conn: sqlite3.Connection, item_id: int) -> Item:
        row = None
        if fits_integer(item_id):
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Item {item_id} not found.")
        return Item.from_row(row)

    @staticmethod
    def _ensure_identifier_free(conn: sqlite3.Connection, data: ItemCreate) -> None:
        if data.isbn is not None:
            if conn.execute("SELECT 1 FROM items WHERE isbn = ?", (data.isbn,)).fetchone():
                raise ConflictError(f"Item with ISBN {data.isbn} already exists.")
        if data.issn is not None:
            if conn.execute("SELECT 1 FROM items WHERE issn = ?", (data.issn,)).fetchone():
                raise ConflictError(f"Item with ISSN {data.issn} already exists.")

    @staticmethod
    def _filters(kind, query, shelf_id, unplaced):
        clauses: List[str] = []
        params: List[Any] = []
        if kind:
            if kind not in (ItemKind.BOOK.value, ItemKind.JOURNAL.value):
                raise ValidationError("Invalid kind. Allowed: book, journal")
            clauses.append("kind = ?")
            params.append(kind)
        if query:
            like = f"%{query}%"
            clauses.append(
                "(title LIKE ? OR author LIKE ? OR publisher LIKE ? OR isbn LIKE ? OR issn LIKE ?)"
            )
            params.extend([like] * 5)
        if shelf_id is not None:
            clauses.append("shelf_id = ?")
            params.append(shelf_id)
        if unplaced:
            clauses.append("shelf_id IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)
