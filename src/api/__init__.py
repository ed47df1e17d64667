"""
Accrual Ledger - API Module

FastAPI adapter exposing the ledger operation surface over HTTP.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
