"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from billing_core.api.dependencies.access import get_account_store, require_access

__all__ = ["get_account_store", "require_access"]
