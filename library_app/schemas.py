"""Validated input structs for every mutating operation, plus API response models.

The catalog, shelf and borrowing components accept either an instance of
the relevant model or a plain mapping; mappings are validated with
``parse_input`` before anything touches the database.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from library_app.database import SQLITE_MAX_INTEGER
from library_app.errors import ValidationError
from library_app.models import BorrowingStatus, FineStatus, FineType, ItemKind
from library_app.utils.validators import ISBNValidator, ISSNValidator, TextValidator

ModelT = TypeVar("ModelT", bound=BaseModel)


def describe_errors(errors: List[dict]) -> str:
    """Flatten pydantic error dicts into one "field: message" string."""
    parts = []
    for err in errors:
        # request bodies report their fields under a leading "body"
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("__root__", "body"))
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid input."


def parse_input(model: Type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` against ``model``, raising the library's ValidationError."""
    if isinstance(data, model):
        return data
    if data is None:
        raise ValidationError("Input is required.")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(describe_errors(e.errors())) from e


def _clean_optional(value: Any) -> Any:
    if isinstance(value, str):
        value = TextValidator.sanitize_text(value)
        return value or None
    return value


# --- Catalog inputs ---
class ItemCreate(BaseModel):
    kind: ItemKind = ItemKind.BOOK
    title: str = Field(..., min_length=1, max_length=255)
    author: Optional[str] = Field(default=None, max_length=500)
    publisher: Optional[str] = Field(default=None, max_length=255)
    isbn: Optional[str] = None
    issn: Optional[str] = None
    genre: Optional[str] = None
    publication_year: Optional[int] = Field(default=None, ge=0, le=9999)
    cover_url: Optional[str] = None
    total_copies: int = Field(default=1, gt=0, le=SQLITE_MAX_INTEGER)

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = TextValidator.sanitize_text(value)
            if not TextValidator.validate_title(value):
                raise ValueError("Title is required.")
        return value

    @field_validator("author", "publisher", "genre", "isbn", "issn", "cover_url", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> Any:
        return _clean_optional(value)

    @model_validator(mode="after")
    def _check_kind_requirements(self) -> "ItemCreate":
        if self.isbn is not None:
            if not ISBNValidator.is_valid_isbn(self.isbn):
                raise ValueError(f"Invalid ISBN: {self.isbn}")
            self.isbn = ISBNValidator.normalize_isbn(self.isbn)
        if self.issn is not None:
            if not ISSNValidator.is_valid_issn(self.issn):
                raise ValueError(f"Invalid ISSN: {self.issn}")
            self.issn = ISSNValidator.normalize_issn(self.issn)

        if self.kind == ItemKind.BOOK:
            if not TextValidator.validate_author(self.author):
                raise ValueError("A book requires an author.")
            if self.isbn is None:
                raise ValueError("A book requires an ISBN.")
        else:
            if not self.publisher:
                raise ValueError("A journal requires a publisher.")
            if self.issn is None:
                raise ValueError("A journal requires an ISSN.")
        return self


class ItemUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    author: Optional[str] = Field(default=None, max_length=500)
    publisher: Optional[str] = Field(default=None, max_length=255)
    genre: Optional[str] = None
    publication_year: Optional[int] = Field(default=None, ge=0, le=9999)
    cover_url: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, gt=0, le=SQLITE_MAX_INTEGER)

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value: Any) -> Any:
        # a title can be replaced but never blanked
        if isinstance(value, str):
            value = TextValidator.sanitize_text(value)
            if not TextValidator.validate_title(value):
                raise ValueError("Title cannot be blank.")
        return value

    @field_validator("author", "publisher", "genre", "cover_url", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> Any:
        return _clean_optional(value)

    def changes(self) -> dict:
        """Fields explicitly provided with a non-null value."""
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


# --- Shelf inputs ---
class ShelfCreate(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    capacity: int = Field(..., gt=0, le=SQLITE_MAX_INTEGER)
    shelf_number: Optional[int] = Field(default=None, ge=0, le=SQLITE_MAX_INTEGER)
    pos_x: float = 0.0
    pos_y: float = 0.0

    @field_validator("category", mode="before")
    @classmethod
    def _clean_category(cls, value: Any) -> Any:
        return TextValidator.sanitize_text(value) if isinstance(value, str) else value


class ShelfUpdate(BaseModel):
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    capacity: Optional[int] = Field(default=None, gt=0, le=SQLITE_MAX_INTEGER)
    shelf_number: Optional[int] = Field(default=None, ge=0, le=SQLITE_MAX_INTEGER)
    pos_x: Optional[float] = None
    pos_y: Optional[float] = None

    def changes(self) -> dict:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class PlacementRequest(BaseModel):
    shelf_id: int
    position: Optional[int] = Field(default=None, ge=1, le=SQLITE_MAX_INTEGER)


class AutoArrangeRequest(BaseModel):
    item_ids: Optional[List[int]] = None


# --- Borrowing inputs ---
class BorrowRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    item_id: int
    loan_period_days: Optional[int] = Field(default=None, gt=0, le=365)

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip_user(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class SweepRequest(BaseModel):
    now: Optional[datetime] = None


class FineCreate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    amount: float = Field(..., gt=0, le=1_000_000)
    reason: str = Field(..., min_length=1, max_length=500)
    fine_type: FineType = FineType.OTHER
    borrowing_id: Optional[int] = None
    overdue_days: Optional[int] = Field(default=None, ge=0, le=SQLITE_MAX_INTEGER)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("user_id", "reason", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return TextValidator.sanitize_text(value) if isinstance(value, str) else value

    @field_validator("notes", mode="before")
    @classmethod
    def _clean_notes(cls, value: Any) -> Any:
        return _clean_optional(value)

    @field_validator("amount")
    @classmethod
    def _round_amount(cls, value: float) -> float:
        value = round(value, 2)
        if value <= 0:
            raise ValueError("Amount must be at least 0.01.")
        return value


# --- Response models ---
class ItemModel(BaseModel):
    id: int
    kind: ItemKind
    title: str
    author: Optional[str] = None
    publisher: Optional[str] = None
    isbn: Optional[str] = None
    issn: Optional[str] = None
    genre: Optional[str] = None
    publication_year: Optional[int] = None
    cover_url: Optional[str] = None
    total_copies: int
    available_copies: int
    shelf_id: Optional[int] = None
    position: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ShelfModel(BaseModel):
    id: int
    category: str
    capacity: int
    shelf_number: int
    pos_x: float
    pos_y: float
    last_reorganized: Optional[str] = None
    created_at: Optional[str] = None
    occupancy: int = 0


class BorrowingModel(BaseModel):
    id: int
    user_id: str
    item_id: int
    borrow_date: str
    due_date: str
    return_date: Optional[str] = None
    status: BorrowingStatus


class FineModel(BaseModel):
    id: int
    user_id: str
    borrowing_id: Optional[int] = None
    amount: float
    reason: str
    fine_type: FineType
    overdue_days: Optional[int] = None
    notes: Optional[str] = None
    status: FineStatus
    created_at: str
    paid_at: Optional[str] = None


class PlacementModel(BaseModel):
    item_id: int
    shelf_id: int
    position: int


class StatsModel(BaseModel):
    total_items: int
    total_books: int
    total_journals: int
    unique_authors: int
    total_copies: int
    available_copies: int
    total_shelves: int
    shelf_capacity: int
    placed_items: int
    active_borrowings: int
    overdue_borrowings: int
    returned_borrowings: int


class CoverUploadResponse(BaseModel):
    url: str
    filename: str
    message: str = "Cover uploaded."
