"""End-to-end probe runs against an in-memory session."""

from __future__ import annotations

import asyncio
import json

import pytest

from cidcheck.core.messages import Reply
from cidcheck.models import Config
from cidcheck.output.sink import resume_offset
from cidcheck.probe.runner import run_check
from cidcheck.utils.exceptions import (
    ConfigurationError,
    InputFileError,
    InvalidPeerAddressError,
    PeerConnectionError,
    SessionBackendError,
)

pytestmark = [pytest.mark.integration, pytest.mark.probe]

STAMP = 1700000000


def _config(tmp_path, **probe):
    probe.setdefault("batch_size", 2)
    probe.setdefault("concurrency", 1)
    probe.setdefault("batch_timeout", 0.2)
    return Config.model_validate(
        {
            "probe": probe,
            "output": {"output_dir": str(tmp_path / "out"), "debug_log": True},
            "export": {"output_dir": str(tmp_path / "cars")},
        }
    )


def _cid_file(tmp_path, cids):
    path = tmp_path / "cids.txt"
    path.write_text("\n".join(str(c) for c in cids) + "\n")
    return path


@pytest.mark.asyncio
async def test_example_run(tmp_path, cids, target, target_addr, fake_session):
    """A found, B not found, C/D send error, E timed out."""
    a, b, *_ = cids

    def respond(query, index):
        if index == 0:
            return [(target, Reply.of(haves=[a], dont_haves=[b]))]
        return []

    session = fake_session(respond, fail_sends={1})
    config = _config(tmp_path)

    summary = await run_check(
        config,
        target_addr,
        _cid_file(tmp_path, cids),
        session_factory=lambda cfg: session,
        timestamp=STAMP,
    )

    assert (summary.total, summary.found, summary.not_found) == (5, 1, 1)
    assert (summary.errors, summary.unresponded) == (2, 1)
    assert summary.batches == 3
    assert summary.duplicates == 0
    assert session.closed is True
    assert str(session.connected_to.peer_id) == str(target)

    out = tmp_path / "out"
    failed = (out / f"cid-check.failed.cids.{STAMP}").read_text().splitlines()
    assert sorted(failed) == sorted(str(c) for c in cids[1:])

    debug = [json.loads(line) for line in (out / f"cid-check.debug.{STAMP}").read_text().splitlines()]
    assert sorted(r["line"] for r in debug) == [1, 2, 3, 4, 5]

    progress = out / f"cid-check.progress.{STAMP}"
    assert len(progress.read_text().splitlines()) == 4
    assert resume_offset(progress) == 6


@pytest.mark.asyncio
async def test_resume_covers_the_rest(tmp_path, make_cid, target, target_addr, fake_session):
    members = [make_cid(str(i)) for i in range(7)]
    cid_file = _cid_file(tmp_path, members)

    def respond(query, index):
        return [(target, Reply.of(dont_haves=query.cids))]

    first = fake_session(respond)
    cancel = asyncio.Event()
    original_send = first.send

    async def send_then_cancel(query):
        await original_send(query)
        if len(first.sent) == 2:
            cancel.set()

    first.send = send_then_cancel
    config = _config(tmp_path)
    await run_check(
        config,
        target_addr,
        cid_file,
        session_factory=lambda cfg: first,
        cancel_event=cancel,
        timestamp=STAMP,
    )
    progress = tmp_path / "out" / f"cid-check.progress.{STAMP}"
    offset = resume_offset(progress)
    assert offset == 3

    second = fake_session(respond)
    summary = await run_check(
        config,
        target_addr,
        cid_file,
        offset,
        session_factory=lambda cfg: second,
        timestamp=STAMP + 1,
    )

    resent = [cid for query in second.sent for cid in query.cids]
    assert resent == members[2:]
    assert summary.total == 5
    assert summary.not_found == 5


@pytest.mark.asyncio
async def test_resume_after_cancel_with_later_batch_done(tmp_path, cids, target, target_addr, fake_session):
    """Only the second batch answers before the cancel; resume restarts at line 1."""
    members = cids[:4]

    def respond(query, index):
        if members[2] in query.cids:
            return [(target, Reply.of(dont_haves=query.cids))]
        return []

    session = fake_session(respond)
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.3, cancel.set)
    summary = await run_check(
        _config(tmp_path, concurrency=2, batch_timeout=5.0),
        target_addr,
        _cid_file(tmp_path, members),
        session_factory=lambda cfg: session,
        cancel_event=cancel,
        timestamp=STAMP,
    )

    assert summary.cancelled is True
    assert summary.not_found == 2
    progress = tmp_path / "out" / f"cid-check.progress.{STAMP}"
    records = [json.loads(line) for line in progress.read_text().splitlines()]
    assert records[0] == {"run_start": 1}
    assert [r["offset"] for r in records[1:]] == [3]
    assert resume_offset(progress) == 1


@pytest.mark.asyncio
async def test_exports_selected_cids(tmp_path, cids, target, target_addr, fake_session):
    a, b = cids[:2]
    session = fake_session(lambda q, i: [(target, Reply.of(haves=[a], dont_haves=[b]))])
    config = _config(tmp_path)
    config.export.enabled = True
    exported = []

    async def fake_export(cid):
        exported.append(cid)
        return b"car"

    summary = await run_check(
        config,
        target_addr,
        _cid_file(tmp_path, [a, b]),
        session_factory=lambda cfg: session,
        timestamp=STAMP,
        exporter=fake_export,
    )

    assert exported == [b]
    assert summary.exports_ok == 1
    assert (tmp_path / "cars" / f"{b}.car").read_bytes() == b"car"


@pytest.mark.asyncio
async def test_bad_peer_address(tmp_path, cids, fake_session):
    with pytest.raises(InvalidPeerAddressError):
        await run_check(
            _config(tmp_path),
            "/ip4/127.0.0.1/tcp/4001",
            _cid_file(tmp_path, cids),
            session_factory=lambda cfg: fake_session(),
        )


@pytest.mark.asyncio
async def test_unreadable_input(tmp_path, target_addr, fake_session):
    with pytest.raises(InputFileError):
        await run_check(
            _config(tmp_path),
            target_addr,
            tmp_path / "missing.txt",
            session_factory=lambda cfg: fake_session(),
        )


@pytest.mark.asyncio
async def test_unreachable_peer(tmp_path, cids, target_addr, unreachable_session):
    with pytest.raises(PeerConnectionError):
        await run_check(
            _config(tmp_path),
            target_addr,
            _cid_file(tmp_path, cids),
            session_factory=lambda cfg: unreachable_session,
        )
    assert unreachable_session.closed is True
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_connect_timeout(tmp_path, cids, target_addr, fake_session):
    session = fake_session()

    async def hang(address, timeout):
        await asyncio.sleep(10)

    session.connect = hang
    config = _config(tmp_path, connect_timeout=0.05)
    with pytest.raises(PeerConnectionError, match="Timed out"):
        await run_check(
            config,
            target_addr,
            _cid_file(tmp_path, cids),
            session_factory=lambda cfg: session,
        )


@pytest.mark.asyncio
async def test_no_session_backend(tmp_path, cids, target_addr):
    with pytest.raises(SessionBackendError):
        await run_check(_config(tmp_path), target_addr, _cid_file(tmp_path, cids))


@pytest.mark.asyncio
async def test_invalid_offset(tmp_path, cids, target_addr, fake_session):
    with pytest.raises(ConfigurationError):
        await run_check(
            _config(tmp_path),
            target_addr,
            _cid_file(tmp_path, cids),
            0,
            session_factory=lambda cfg: fake_session(),
        )
