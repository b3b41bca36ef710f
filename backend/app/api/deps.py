"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and catalog dependencies so that
router modules can import everything they need from one place::

    from app.api.deps import get_db, require_account_access
"""

from app.auth.dependencies import (
    get_current_active_user,
    get_current_user,
    require_account_access,
    require_admin,
)
from app.billing.plans import get_price_catalog
from app.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "require_account_access",
    "require_admin",
    "get_price_catalog",
]
