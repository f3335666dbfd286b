"""
Injectable collaborators. Overridden in tests through app.dependency_overrides.
"""
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..services.lifecycle import InvalidationDispatcher, invalidation_dispatcher
from ..services.regulation import ScopeResolver


def get_session_factory() -> Callable[[], Session]:
    """Factory for sessions owned by background workers."""
    return SessionLocal


def get_invalidation_dispatcher() -> InvalidationDispatcher:
    return invalidation_dispatcher


def get_scope_resolver() -> Optional[ScopeResolver]:
    """
    ResolveUserScope from the authorization layer.
    None means scopes are not checked (single-tenant deployments).
    """
    return None
