"""Shared API dependencies."""

from lmchat.core.database import get_db, get_session_factory
from lmchat.core.security import get_current_admin, get_current_user
from lmchat.services.broadcaster import get_broadcaster
from lmchat.services.completion_client import get_completion_client

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_admin",
    "get_broadcaster",
    "get_completion_client",
]
