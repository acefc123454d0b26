"""Per-batch classification of replies into probe results.

A :class:`PendingBatch` is owned by exactly one worker, so it needs no
locking. CIDs are removed through dictionary lookups keyed by ContentID;
the reply sets being iterated are immutable, so nothing is mutated while it
is being walked.
"""

from __future__ import annotations

import logging
from itertools import chain

from cidcheck.core.content_id import ContentID
from cidcheck.core.messages import Batch, ProbeResult, Query, Reply

logger = logging.getLogger(__name__)


class PendingBatch:
    """Unresolved CIDs of one in-flight query."""

    def __init__(self, batch: Batch):
        """Index the batch by CID; duplicate CIDs keep every input line."""
        self.batch = batch
        self.query = Query.want_have(batch.cids)
        self._pending: dict[ContentID, list[int]] = {}
        for position, cid in enumerate(batch.cids):
            self._pending.setdefault(cid, []).append(batch.first_line + position)
        # first-seen classification of every CID already resolved
        self._resolved: dict[ContentID, bool] = {}
        # batch-level: any reply touching this batch marks it, so CIDs still
        # pending at timeout are reported as responded
        self.responded = False
        self.conflicts = 0

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def __contains__(self, cid: object) -> bool:
        return cid in self._pending

    @property
    def pending_cids(self) -> list[ContentID]:
        return list(self._pending)

    def apply(self, reply: Reply, elapsed: float) -> list[ProbeResult]:
        """Resolve every still-pending CID the reply mentions.

        ``blocks`` and ``haves`` are applied before ``dont_haves``. A CID
        already resolved keeps its first classification; a contradicting
        later signal is counted in :attr:`conflicts` and otherwise ignored.
        """
        results: list[ProbeResult] = []
        relevant = False
        for cid in chain(reply.blocks, reply.haves):
            relevant |= self._resolve(cid, True, elapsed, results)
        for cid in reply.dont_haves:
            relevant |= self._resolve(cid, False, elapsed, results)
        if relevant:
            self.responded = True
        return results

    def _resolve(
        self,
        cid: ContentID,
        found: bool,
        elapsed: float,
        results: list[ProbeResult],
    ) -> bool:
        lines = self._pending.pop(cid, None)
        if lines is None:
            previous = self._resolved.get(cid)
            if previous is None:
                return False
            if previous != found:
                self.conflicts += 1
                logger.debug(
                    "Batch %d: conflicting signal for %s (kept found=%s)",
                    self.batch.index,
                    cid,
                    previous,
                )
            return True

        self._resolved[cid] = found
        results.extend(
            ProbeResult(
                cid=cid,
                line=line,
                found=found,
                responded=True,
                elapsed=elapsed,
            )
            for line in lines
        )
        return True

    def abandon(
        self,
        *,
        responded: bool,
        elapsed: float,
        error: str | None = None,
        timed_out: bool = False,
    ) -> list[ProbeResult]:
        """Resolve every remaining CID as not found and empty the batch."""
        results = [
            ProbeResult(
                cid=cid,
                line=line,
                found=False,
                responded=responded,
                error=error,
                elapsed=elapsed,
                timed_out=timed_out,
            )
            for cid, lines in self._pending.items()
            for line in lines
        ]
        self._pending.clear()
        return results
