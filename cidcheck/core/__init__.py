"""Core value types: content identifiers, peers, queries and results."""

from __future__ import annotations

from cidcheck.core.content_id import (
    ContentID,
    PeerAddress,
    PeerIdentity,
    load_cid_file,
    parse_cid_lines,
)
from cidcheck.core.messages import (
    Batch,
    ProbeResult,
    ProbeStatus,
    Query,
    Reply,
    WantEntry,
    WantType,
)

__all__ = [
    "Batch",
    "ContentID",
    "PeerAddress",
    "PeerIdentity",
    "ProbeResult",
    "ProbeStatus",
    "Query",
    "Reply",
    "WantEntry",
    "WantType",
    "load_cid_file",
    "parse_cid_lines",
]
