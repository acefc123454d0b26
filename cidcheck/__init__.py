"""cidcheck - probe a single peer for the availability of content identifiers."""

from __future__ import annotations

__version__ = "0.1.0"
