"""Partition the CID input into contiguous batches."""

from __future__ import annotations

from typing import Iterator, Sequence

from cidcheck.core.content_id import ContentID
from cidcheck.core.messages import Batch


def iter_batches(
    cids: Sequence[ContentID],
    offset: int,
    batch_size: int,
) -> Iterator[Batch]:
    """Yield contiguous slices of ``cids[offset:]`` of at most ``batch_size``.

    ``offset`` is 0-based. The sequence is lazy, deterministic and can be
    restarted from any offset; an offset past the end yields nothing.
    """
    if batch_size < 1:
        msg = f"batch_size must be positive, got {batch_size}"
        raise ValueError(msg)
    if offset < 0:
        msg = f"offset must not be negative, got {offset}"
        raise ValueError(msg)

    for index, start in enumerate(range(offset, len(cids), batch_size)):
        yield Batch(
            index=index,
            start=start,
            cids=tuple(cids[start : start + batch_size]),
        )


def count_batches(total: int, offset: int, batch_size: int) -> int:
    """Number of batches :func:`iter_batches` yields for ``total`` CIDs."""
    remaining = max(total - offset, 0)
    return -(-remaining // batch_size)
