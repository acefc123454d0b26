"""Session contract for talking to the probe target.

A session owns one connection to one peer. The probe pipeline only needs
three things from it: transmit a query, hear about replies, and hear about
transport failures. Wire encoding, connection setup and address filtering
live in the backend that implements :class:`ProbeSession`.

Backends are found either through the ``cidcheck.sessions`` entry point
group or as a ``module:callable`` path. Either way the target is a factory
that receives the run :class:`~cidcheck.models.Config` and returns a
session.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from enum import Enum
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any, Callable

from cidcheck.utils.exceptions import SessionBackendError

if TYPE_CHECKING:  # pragma: no cover
    from cidcheck.core.content_id import PeerAddress, PeerIdentity
    from cidcheck.core.messages import Query, Reply
    from cidcheck.models import Config

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "cidcheck.sessions"

ReplyCallback = Callable[["PeerIdentity", "Reply"], None]
ErrorCallback = Callable[[BaseException], None]
SessionFactory = Callable[["Config"], "ProbeSession"]


class SessionState(Enum):
    """Session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"


class ProbeSession(ABC):
    """Base class for probe session backends.

    Callbacks registered with :meth:`on_reply` and
    :meth:`on_transport_error` may be invoked from any thread and
    concurrently with each other; consumers must be thread-safe. A
    callback may block the calling transport thread while the consumer
    is full.
    """

    def __init__(self) -> None:
        """Initialize callback registries."""
        self.state = SessionState.DISCONNECTED
        self._reply_callbacks: list[ReplyCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

    @abstractmethod
    async def connect(self, address: PeerAddress, timeout: float) -> None:
        """Open the connection to ``address`` within ``timeout`` seconds.

        Raises:
            PeerConnectionError: the peer could not be reached.
        """

    @abstractmethod
    async def send(self, query: Query) -> None:
        """Transmit ``query`` to the connected peer.

        Raises only for transport-level failures. Callers bound the call
        with their own deadline.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release transport resources."""

    def on_reply(self, callback: ReplyCallback) -> None:
        """Register a callback invoked once per inbound reply."""
        self._reply_callbacks.append(callback)

    def on_transport_error(self, callback: ErrorCallback) -> None:
        """Register a callback invoked when the transport fails."""
        self._error_callbacks.append(callback)

    def deliver_reply(self, sender: PeerIdentity, reply: Reply) -> None:
        """Hand an inbound reply to every registered callback.

        Backends call this from their receive path.
        """
        for callback in list(self._reply_callbacks):
            callback(sender, reply)

    def deliver_error(self, error: BaseException) -> None:
        """Hand a transport failure to every registered callback."""
        for callback in list(self._error_callbacks):
            callback(error)

    async def __aenter__(self) -> ProbeSession:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _load_from_path(path: str) -> Any:
    module_path, _, attr = path.partition(":")
    if not module_path or not attr:
        msg = f"Session backend path must look like 'module:callable', got {path!r}"
        raise SessionBackendError(msg)
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        msg = f"Cannot import session backend module {module_path!r}: {e}"
        raise SessionBackendError(msg) from e
    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            msg = f"Session backend {path!r} has no attribute {part!r}"
            raise SessionBackendError(msg) from e
    return target


def available_backends() -> list[str]:
    """Names of session backends registered through entry points."""
    return sorted(ep.name for ep in entry_points(group=ENTRY_POINT_GROUP))


def load_session_factory(name: str | None) -> SessionFactory:
    """Resolve a session backend name or path to a factory callable."""
    if not name:
        installed = available_backends()
        hint = f" (installed: {', '.join(installed)})" if installed else ""
        msg = (
            "No session backend configured; set probe.session_backend or pass "
            f"--session-backend{hint}"
        )
        raise SessionBackendError(msg)

    if ":" in name:
        factory = _load_from_path(name)
    else:
        matches = [ep for ep in entry_points(group=ENTRY_POINT_GROUP) if ep.name == name]
        if not matches:
            msg = f"Unknown session backend {name!r}"
            raise SessionBackendError(msg, {"installed": available_backends()})
        try:
            factory = matches[0].load()
        except Exception as e:
            msg = f"Failed to load session backend {name!r}: {e}"
            raise SessionBackendError(msg) from e

    if not callable(factory):
        msg = f"Session backend {name!r} is not callable"
        raise SessionBackendError(msg)
    logger.debug("Using session backend %s", name)
    return factory
