import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

from library_app.catalog import CatalogStore
from library_app.database import SQLITE_MAX_INTEGER, Database, fits_integer, to_db_timestamp, utcnow
from library_app.errors import CapacityError, ConflictError, NotFoundError, ValidationError
from library_app.models import Item, Placement, Shelf
from library_app.schemas import ShelfCreate, ShelfUpdate, parse_input

logger = logging.getLogger(__name__)


class ShelfAllocator:
    """Shelves and the placement of catalog items on them.

    This is the only writer of ``items.shelf_id`` and ``items.position``.
    Every placement re-reads the shelf's occupied positions inside the write
    transaction, so capacity and position uniqueness are checked against the
    committed state rather than a cached count.
    """

    def __init__(self, db: Database, catalog: CatalogStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.catalog = catalog
        self.clock = clock

    # ------------------------- Shelf administration ------------------------- #
    def create_shelf(self, payload: Any) -> Shelf:
        data: ShelfCreate = parse_input(ShelfCreate, payload)
        with self.db.transaction() as conn:
            shelf_number = data.shelf_number
            if shelf_number is None:
                shelf_number = conn.execute("SELECT COALESCE(MAX(shelf_number), 0) + 1 FROM shelves").fetchone()[0]
            cursor = conn.execute(
                """
                INSERT INTO shelves (category, capacity, shelf_number, pos_x, pos_y, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (data.category, data.capacity, shelf_number, data.pos_x, data.pos_y,
                 to_db_timestamp(self.clock())),
            )
            shelf = self._fetch_shelf(conn, cursor.lastrowid)
        logger.info(f"Shelf created: id={shelf.id}, category={shelf.category}, capacity={shelf.capacity}")
        return shelf

    def get_shelf(self, shelf_id: int) -> Shelf:
        with self.db.connection() as conn:
            return self._fetch_shelf(conn, shelf_id)

    def list_shelves(self, category: Optional[str] = None) -> List[Shelf]:
        sql = "SELECT * FROM shelves"
        params: list = []
        if category:
            sql += " WHERE category = ? COLLATE NOCASE"
            params.append(category)
        sql += " ORDER BY shelf_number, id"
        with self.db.connection() as conn:
            return [Shelf.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def update_shelf(self, shelf_id: int, update: Any) -> Shelf:
        """Edit shelf attributes; capacity may not drop below current occupancy."""
        data: ShelfUpdate = parse_input(ShelfUpdate, update)
        changes = data.changes()
        if not changes:
            raise ValidationError("Nothing to update.")
        with self.db.transaction() as conn:
            self._fetch_shelf(conn, shelf_id)
            if "capacity" in changes:
                current = self._occupancy(conn, shelf_id)
                if changes["capacity"] < current:
                    raise CapacityError(
                        f"Shelf {shelf_id} holds {current} items; capacity cannot drop to {changes['capacity']}."
                    )
            assignments = ", ".join(f"{k} = ?" for k in changes)
            conn.execute(f"UPDATE shelves SET {assignments} WHERE id = ?", (*changes.values(), shelf_id))
            return self._fetch_shelf(conn, shelf_id)

    def delete_shelf(self, shelf_id: int) -> Shelf:
        with self.db.transaction() as conn:
            shelf = self._fetch_shelf(conn, shelf_id)
            count = self._occupancy(conn, shelf_id)
            if count:
                raise ConflictError(f"Shelf {shelf_id} still holds {count} item(s).")
            conn.execute("DELETE FROM shelves WHERE id = ?", (shelf_id,))
        logger.info(f"Shelf deleted: id={shelf_id}")
        return shelf

    def shelf_contents(self, shelf_id: int) -> List[Item]:
        with self.db.connection() as conn:
            self._fetch_shelf(conn, shelf_id)
            rows = conn.execute(
                "SELECT * FROM items WHERE shelf_id = ? ORDER BY position", (shelf_id,)
            ).fetchall()
        return [Item.from_row(row) for row in rows]

    def occupancy(self, shelf_id: int) -> int:
        """Number of items currently placed on the shelf."""
        with self.db.connection() as conn:
            self._fetch_shelf(conn, shelf_id)
            return self._occupancy(conn, shelf_id)

    # ------------------------- Placement ------------------------- #
    def place_item(self, item_id: int, shelf_id: int, position: Optional[int] = None) -> Item:
        """Put an item at ``position`` on a shelf (lowest free slot when omitted).

        An item that is already shelved is moved, as with ``relocate_item``.
        """
        with self.db.transaction() as conn:
            item = self.catalog.get_item(item_id, conn=conn)
            return self._move(conn, item, shelf_id, position)

    def relocate_item(self, item_id: int, new_shelf_id: int, new_position: Optional[int] = None) -> Item:
        """Take an item off its shelf and place it elsewhere in one transaction.

        If the placement fails the whole transaction rolls back and the item
        keeps its original shelf and position.
        """
        with self.db.transaction() as conn:
            item = self.catalog.get_item(item_id, conn=conn)
            moved = self._move(conn, item, new_shelf_id, new_position)
        logger.info(
            f"Item {item_id} relocated: shelf {item.shelf_id}@{item.position} -> "
            f"{moved.shelf_id}@{moved.position}"
        )
        return moved

    def remove_item(self, item_id: int) -> Item:
        """Clear an item's placement. Unplaced items are left untouched."""
        with self.db.transaction() as conn:
            item = self.catalog.get_item(item_id, conn=conn)
            if not item.is_placed:
                return item
            self._clear(conn, item)
            self._touch_shelf(conn, item.shelf_id)
            logger.info(f"Item {item_id} removed from shelf {item.shelf_id}")
            return self.catalog.get_item(item_id, conn=conn)

    def auto_arrange(self, item_ids: Optional[List[int]] = None) -> List[Placement]:
        """Place unshelved items into shelves with free slots.

        Shelves whose category matches the item's genre (or kind, when no
        genre is set) are tried first, then any shelf with room, in shelf
        number order. Items that fit nowhere stay unplaced.
        """
        placements: List[Placement] = []
        with self.db.transaction() as conn:
            if item_ids is None:
                rows = conn.execute("SELECT * FROM items WHERE shelf_id IS NULL ORDER BY id").fetchall()
                items = [Item.from_row(row) for row in rows]
            else:
                # each id once, in first-seen order
                items = [self.catalog.get_item(i, conn=conn) for i in dict.fromkeys(item_ids)]
                items = [i for i in items if not i.is_placed]

            shelves = [
                Shelf.from_row(row)
                for row in conn.execute("SELECT * FROM shelves ORDER BY shelf_number, id").fetchall()
            ]
            free = {s.id: s.capacity - self._occupancy(conn, s.id) for s in shelves}

            for item in items:
                wanted = (item.genre or item.kind).strip().lower()
                preferred = [s for s in shelves if s.category.strip().lower() == wanted]
                others = [s for s in shelves if s not in preferred]
                for shelf in preferred + others:
                    if free[shelf.id] <= 0:
                        continue
                    placed = self._move(conn, item, shelf.id, None)
                    free[shelf.id] -= 1
                    placements.append(Placement(item_id=item.id, shelf_id=shelf.id, position=placed.position))
                    break
                else:
                    logger.warning(f"No shelf with free space for item {item.id}")
        logger.info(f"Auto-arrange placed {len(placements)} of {len(items)} item(s)")
        return placements

    # ------------------------- Helpers ------------------------- #
    def _move(self, conn: sqlite3.Connection, item: Item, shelf_id: int, position: Optional[int]) -> Item:
        if position is not None and (isinstance(position, bool) or not isinstance(position, int)
                                     or not 1 <= position <= SQLITE_MAX_INTEGER):
            raise ValidationError("Position must be a positive integer.")
        shelf = self._fetch_shelf(conn, shelf_id)

        if item.is_placed:
            self._clear(conn, item)

        occupied = self._occupied_positions(conn, shelf_id)
        if len(occupied) >= shelf.capacity:
            logger.warning(f"Shelf {shelf_id} is full ({len(occupied)}/{shelf.capacity}); item {item.id} rejected")
            raise CapacityError(f"Shelf {shelf_id} is full ({shelf.capacity} items).")
        if position is None:
            position = _lowest_free(occupied)
        elif position in occupied:
            raise ConflictError(f"Position {position} on shelf {shelf_id} is already taken.")

        try:
            conn.execute(
                "UPDATE items SET shelf_id = ?, position = ?, updated_at = ? WHERE id = ?",
                (shelf_id, position, to_db_timestamp(self.clock()), item.id),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Position {position} on shelf {shelf_id} is already taken.") from e

        self._touch_shelf(conn, shelf_id)
        if item.shelf_id is not None and item.shelf_id != shelf_id:
            self._touch_shelf(conn, item.shelf_id)
        logger.info(f"Item {item.id} placed on shelf {shelf_id} at position {position}")
        return self.catalog.get_item(item.id, conn=conn)

    def _clear(self, conn: sqlite3.Connection, item: Item) -> None:
        conn.execute(
            "UPDATE items SET shelf_id = NULL, position = NULL, updated_at = ? WHERE id = ?",
            (to_db_timestamp(self.clock()), item.id),
        )

    def _touch_shelf(self, conn: sqlite3.Connection, shelf_id: int) -> None:
        conn.execute(
            "UPDATE shelves SET last_reorganized = ? WHERE id = ?",
            (to_db_timestamp(self.clock()), shelf_id),
        )

    @staticmethod
    def _fetch_shelf(conn: sqlite3.Connection, shelf_id: int) -> Shelf:
        row = None
        if fits_integer(shelf_id):
            row = conn.execute("SELECT * FROM shelves WHERE id = ?", (shelf_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Shelf {shelf_id} not found.")
        return Shelf.from_row(row)

    @staticmethod
    def _occupancy(conn: sqlite3.Connection, shelf_id: int) -> int:
        return conn.execute("SELECT COUNT(*) FROM items WHERE shelf_id = ?", (shelf_id,)).fetchone()[0]

    @staticmethod
    def _occupied_positions(conn: sqlite3.Connection, shelf_id: int) -> Set[int]:
        rows = conn.execute("SELECT position FROM items WHERE shelf_id = ?", (shelf_id,)).fetchall()
        return {row[0] for row in rows}


def _lowest_free(occupied: Set[int]) -> int:
    position = 1
    while position in occupied:
        position += 1
    return position
