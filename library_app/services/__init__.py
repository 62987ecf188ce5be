"""External services used by the library (cover image storage)."""
