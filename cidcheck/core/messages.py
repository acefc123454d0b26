"""Query, reply and result types exchanged by the probe pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from cidcheck.core.content_id import ContentID


class WantType(Enum):
    """Wantlist entry intents."""

    BLOCK = "block"
    HAVE = "have"


class ProbeStatus(Enum):
    """Terminal classification of a probed CID."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    UNRESPONDED = "unresponded"
    ERROR = "error"


@dataclass(frozen=True)
class WantEntry:
    """One wantlist entry of an outbound query."""

    cid: ContentID
    want_type: WantType = WantType.HAVE
    send_dont_have: bool = True
    priority: int = 0


@dataclass(frozen=True)
class Query:
    """Outbound presence query; ordered and immutable once built."""

    entries: tuple[WantEntry, ...]

    @classmethod
    def want_have(cls, cids: Iterable[ContentID]) -> Query:
        """Build a want-have query, sending each distinct CID once."""
        seen: set[ContentID] = set()
        entries = []
        for cid in cids:
            if cid in seen:
                continue
            seen.add(cid)
            entries.append(WantEntry(cid=cid))
        return cls(entries=tuple(entries))

    @property
    def cids(self) -> list[ContentID]:
        return [entry.cid for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class Reply:
    """Inbound presence reply from a peer.

    ``blocks`` holds the CIDs of content bodies the peer sent; a block
    implies "have".
    """

    haves: frozenset[ContentID] = field(default_factory=frozenset)
    dont_haves: frozenset[ContentID] = field(default_factory=frozenset)
    blocks: frozenset[ContentID] = field(default_factory=frozenset)

    @classmethod
    def of(
        cls,
        haves: Iterable[ContentID] = (),
        dont_haves: Iterable[ContentID] = (),
        blocks: Iterable[ContentID] = (),
    ) -> Reply:
        return cls(
            haves=frozenset(haves),
            dont_haves=frozenset(dont_haves),
            blocks=frozenset(blocks),
        )

    def mentions(self) -> frozenset[ContentID]:
        """Every CID this reply says anything about."""
        return self.haves | self.dont_haves | self.blocks


@dataclass(frozen=True)
class Batch:
    """A contiguous slice of the input handed to one worker.

    ``start`` is the 0-based index of the first CID in the full input.
    """

    index: int
    start: int
    cids: tuple[ContentID, ...]

    @property
    def first_line(self) -> int:
        return self.start + 1

    @property
    def last_line(self) -> int:
        return self.start + len(self.cids)

    def __len__(self) -> int:
        return len(self.cids)


@dataclass(frozen=True)
class ProbeResult:
    """Terminal record for one input line."""

    cid: ContentID
    line: int
    found: bool
    responded: bool
    error: str | None = None
    elapsed: float = 0.0
    timed_out: bool = False

    @property
    def status(self) -> ProbeStatus:
        if self.found:
            return ProbeStatus.FOUND
        if self.error:
            return ProbeStatus.ERROR
        if self.responded and not self.timed_out:
            return ProbeStatus.NOT_FOUND
        return ProbeStatus.UNRESPONDED

    def to_dict(self) -> dict[str, object]:
        return {
            "cid": str(self.cid),
            "line": self.line,
            "found": self.found,
            "responded": self.responded,
            "error": self.error,
            "elapsed": round(self.elapsed, 6),
            "timed_out": self.timed_out,
            "status": self.status.value,
        }
