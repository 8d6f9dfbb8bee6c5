"""Library API - lending core and HTTP service

This package contains:
- Lending service and availability engine (lending.py, availability.py)
- SQLite stores for catalog, members, loans and users (stores.py, database.py)
- Late fee policies (fees.py)
- Authentication (auth.py)
- HTTP API (api.py) and CLI (main.py)
"""

__version__ = "1.0.0"
