"""Session contract and backend loading."""

from __future__ import annotations

from cidcheck.session.base import (
    ENTRY_POINT_GROUP,
    ProbeSession,
    SessionFactory,
    SessionState,
    available_backends,
    load_session_factory,
)

__all__ = [
    "ENTRY_POINT_GROUP",
    "ProbeSession",
    "SessionFactory",
    "SessionState",
    "available_backends",
    "load_session_factory",
]
