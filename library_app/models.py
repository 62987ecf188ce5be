from __future__ import annotations

import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum

from library_app.database import from_db_timestamp


class ItemKind(str, Enum):
    BOOK = "book"
    JOURNAL = "journal"


class BorrowingStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class FineStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class FineType(str, Enum):
    OVERDUE = "overdue"
    DAMAGE = "damage"
    LOST = "lost"
    OTHER = "other"


# Statuses for which the copy is still out of the library.
OPEN_STATUSES = (BorrowingStatus.ACTIVE.value, BorrowingStatus.OVERDUE.value)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Item:
    """A book or journal in the catalog, with copy availability and placement."""

    id: int
    kind: str
    title: str
    total_copies: int
    available_copies: int
    author: str | None = None
    publisher: str | None = None
    isbn: str | None = None
    issn: str | None = None
    genre: str | None = None
    publication_year: int | None = None
    cover_url: str | None = None
    shelf_id: int | None = None
    position: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        who = self.author or self.publisher or "Unknown"
        return f"{self.title} by {who} (#{self.id})"

    @property
    def is_placed(self) -> bool:
        return self.shelf_id is not None

    @property
    def loaned_copies(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = _isoformat(self.created_at)
        data["updated_at"] = _isoformat(self.updated_at)
        return data

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Item":
        return Item(
            id=row["id"],
            kind=row["kind"],
            title=row["title"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            author=row["author"],
            publisher=row["publisher"],
            isbn=row["isbn"],
            issn=row["issn"],
            genre=row["genre"],
            publication_year=row["publication_year"],
            cover_url=row["cover_url"],
            shelf_id=row["shelf_id"],
            position=row["position"],
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )


@dataclass
class Shelf:
    """A physical shelf with bounded capacity and a position on the floor plan."""

    id: int
    category: str
    capacity: int
    shelf_number: int
    pos_x: float = 0.0
    pos_y: float = 0.0
    last_reorganized: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_reorganized"] = _isoformat(self.last_reorganized)
        data["created_at"] = _isoformat(self.created_at)
        return data

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Shelf":
        return Shelf(
            id=row["id"],
            category=row["category"],
            capacity=row["capacity"],
            shelf_number=row["shelf_number"],
            pos_x=row["pos_x"],
            pos_y=row["pos_y"],
            last_reorganized=from_db_timestamp(row["last_reorganized"]),
            created_at=from_db_timestamp(row["created_at"]),
        )


@dataclass
class Borrowing:
    """A loan of one copy of an item to a user."""

    id: int
    user_id: str
    item_id: int
    borrow_date: datetime
    due_date: datetime
    status: str
    return_date: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "borrow_date": _isoformat(self.borrow_date),
            "due_date": _isoformat(self.due_date),
            "return_date": _isoformat(self.return_date),
            "status": self.status,
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Borrowing":
        return Borrowing(
            id=row["id"],
            user_id=row["user_id"],
            item_id=row["item_id"],
            borrow_date=from_db_timestamp(row["borrow_date"]),
            due_date=from_db_timestamp(row["due_date"]),
            status=row["status"],
            return_date=from_db_timestamp(row["return_date"]),
        )


@dataclass
class Fine:
    """A charge against a user, usually for a late return."""

    id: int
    user_id: str
    amount: float
    reason: str
    fine_type: str
    status: str
    created_at: datetime
    borrowing_id: int | None = None
    overdue_days: int | None = None
    notes: str | None = None
    paid_at: datetime | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == FineStatus.PAID.value

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = _isoformat(self.created_at)
        data["paid_at"] = _isoformat(self.paid_at)
        return data

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Fine":
        return Fine(
            id=row["id"],
            user_id=row["user_id"],
            amount=row["amount"],
            reason=row["reason"],
            fine_type=row["fine_type"],
            status=row["status"],
            created_at=from_db_timestamp(row["created_at"]),
            borrowing_id=row["borrowing_id"],
            overdue_days=row["overdue_days"],
            notes=row["notes"],
            paid_at=from_db_timestamp(row["paid_at"]),
        )


@dataclass
class Placement:
    """Result of an automatic arrangement step."""

    item_id: int
    shelf_id: int
    position: int

    def to_dict(self) -> dict:
        return asdict(self)
