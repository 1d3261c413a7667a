"""Circulation Desk - single-branch circulation backend.

This package contains:
- Circulation engines: checkout, return & fines, renewal (services/)
- Hold queue and fine ledger (services/)
- Database layer (database.py)
- Record types and status vocabularies (models.py)
- REST API (api.py) and operator CLI (main.py)
"""

__version__ = "1.0.0"
