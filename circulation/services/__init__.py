"""Circulation Desk - Services Package

This package contains the circulation components:
- Policy resolver and configuration store
- Item state tracker
- Checkout, return and renewal engines
- Hold queue manager and fine ledger
"""
