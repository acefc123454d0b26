"""Tests for per-batch reply classification."""

from __future__ import annotations

import pytest

from cidcheck.core.messages import Batch, Reply
from cidcheck.probe.classifier import PendingBatch

pytestmark = [pytest.mark.unit, pytest.mark.probe]


def _pending(cids, start=0):
    return PendingBatch(Batch(index=0, start=start, cids=tuple(cids)))


def test_haves_and_dont_haves_resolve(cids):
    a, b, c = cids[:3]
    pending = _pending([a, b, c])

    results = pending.apply(Reply.of(haves=[a], dont_haves=[b]), 0.5)

    by_cid = {r.cid: r for r in results}
    assert by_cid[a].found is True
    assert by_cid[b].found is False
    assert all(r.responded for r in results)
    assert pending.pending_cids == [c]
    assert pending.responded is True


def test_blocks_imply_found(cids):
    a = cids[0]
    pending = _pending([a])
    (result,) = pending.apply(Reply.of(blocks=[a]), 0.1)
    assert result.found is True
    assert not pending


def test_unrelated_reply_changes_nothing(cids):
    a, b = cids[:2]
    pending = _pending([a])
    assert pending.apply(Reply.of(haves=[b]), 0.1) == []
    assert a in pending
    assert pending.responded is False


def test_first_seen_classification_wins(cids):
    a, b = cids[:2]
    pending = _pending([a, b])

    first = pending.apply(Reply.of(haves=[a]), 0.1)
    later = pending.apply(Reply.of(dont_haves=[a], haves=[b]), 0.2)

    assert [r.found for r in first] == [True]
    assert [(r.cid, r.found) for r in later] == [(b, True)]
    assert pending.conflicts == 1


def test_repeated_agreeing_signal_is_not_a_conflict(cids):
    a, b = cids[:2]
    pending = _pending([a, b])
    pending.apply(Reply.of(dont_haves=[a]), 0.1)
    pending.apply(Reply.of(dont_haves=[a]), 0.2)
    assert pending.conflicts == 0


def test_have_beats_dont_have_in_same_reply(cids):
    a = cids[0]
    pending = _pending([a])
    (result,) = pending.apply(Reply.of(haves=[a], dont_haves=[a]), 0.1)
    assert result.found is True


def test_every_cid_of_a_large_reply_is_removed(make_cid):
    # removing while iterating a slice would skip every other element
    members = [make_cid(str(i)) for i in range(50)]
    pending = _pending(members)
    results = pending.apply(Reply.of(dont_haves=members), 0.1)
    assert len(results) == 50
    assert not pending


def test_duplicate_cid_gets_result_per_line(cids):
    a, b = cids[:2]
    pending = _pending([a, b, a], start=10)
    assert len(pending.query) == 2

    results = pending.apply(Reply.of(haves=[a]), 0.1)
    assert sorted(r.line for r in results) == [11, 13]


def test_abandon_resolves_remaining(cids):
    a, b = cids[:2]
    pending = _pending([a, b])
    pending.apply(Reply.of(haves=[a]), 0.1)

    results = pending.abandon(responded=True, elapsed=1.0, timed_out=True)

    assert [(r.cid, r.found, r.responded, r.timed_out) for r in results] == [
        (b, False, True, True)
    ]
    assert not pending
    assert pending.abandon(responded=False, elapsed=2.0) == []
