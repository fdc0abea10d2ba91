"""Library Backend - Core Application Package

This package contains the circulation backend modules including:
- API endpoints (api.py) and request/response schemas (schemas.py)
- Circulation rules (inventory.py, borrowing.py, reservations.py, fines.py)
- Catalog and account management (catalog.py, accounts.py, auth.py)
- Persistence layer (database.py, store.py)
- Admin CLI (cli.py)
"""

__version__ = "1.0.0"
