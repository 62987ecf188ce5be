"""Library App - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Library facade wiring the components together (library.py)
- CLI interface (main.py)
- Catalog, shelf allocation and borrowing ledger (catalog.py, shelves.py, borrowing.py)
- Data models and input schemas (models.py, schemas.py)
- Database layer (database.py)
"""
