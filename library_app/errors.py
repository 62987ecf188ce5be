"""Typed failures raised by the catalog, shelf and borrowing components.

Every error carries a short machine-readable ``code`` so the presentation
layer (API, CLI) can map it to a status code or message without string
matching.
"""


class LibraryError(Exception):
    """Base class for all library failures."""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    """Input is missing or malformed; the caller must fix it and retry."""

    code = "validation_error"


class NotFoundError(LibraryError):
    """A referenced item, shelf or borrowing does not exist."""

    code = "not_found"


class CapacityError(LibraryError):
    """The change would break a numeric bound (copies or shelf capacity)."""

    code = "capacity_exceeded"


class ConflictError(LibraryError):
    """The change would break a uniqueness or state-machine rule."""

    code = "conflict"


class ExternalServiceError(LibraryError):
    """The cover object store could not be reached or rejected a request."""

    code = "external_service_error"


class BusyError(LibraryError):
    """The database write lock could not be taken within the busy timeout."""

    code = "busy"
