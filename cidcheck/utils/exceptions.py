"""Exception hierarchy for cidcheck.

Setup-phase errors (bad peer address, unreadable input, unreachable peer)
propagate to the command line and end the run. Per-batch and per-CID
failures never surface as exceptions; they are recorded on the
corresponding ProbeResult instead.
"""

from __future__ import annotations

from typing import Any


class CidCheckError(Exception):
    """Base exception for all cidcheck errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize cidcheck error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(CidCheckError):
    """Network-related errors."""


class PeerConnectionError(NetworkError):
    """Connecting to the target peer failed."""


class SendError(NetworkError):
    """The session could not transmit a query."""


class ProtocolError(CidCheckError):
    """Content-exchange protocol errors."""


class CorrelationError(ProtocolError):
    """A reply arrived from a peer other than the probe target."""


class ValidationError(CidCheckError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class InputFileError(ValidationError):
    """The CID input file is missing, unreadable or malformed."""


class InvalidContentIDError(ValidationError):
    """A string could not be decoded as a content identifier."""


class InvalidPeerAddressError(ValidationError):
    """A peer address is not a usable multiaddr."""


class SessionBackendError(CidCheckError):
    """No usable session backend could be loaded."""


class ProbeCancelledError(CidCheckError):
    """The run-wide cancel signal fired."""


class ExportError(CidCheckError):
    """Archival export of a CID failed."""


class OutputError(CidCheckError):
    """Output files could not be created."""
