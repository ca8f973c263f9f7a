"""Shared FastAPI dependencies.

The coordinator is built once per process from the session factory so the
scheduler and the routers share the same render dispatcher.  Tests replace
it through ``app.dependency_overrides[get_coordinator]``.
"""

from functools import lru_cache

from app.database import get_session_factory
from app.services.reconciliation import LedgerCoordinator


@lru_cache
def get_coordinator() -> LedgerCoordinator:
    return LedgerCoordinator(get_session_factory())
