from .base import SessionStore
from .memory import InMemorySessionStore

__all__ = ["InMemorySessionStore", "SessionStore"]
