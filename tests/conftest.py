"""Pytest configuration and shared fixtures for cidcheck tests."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os

import pytest

from cidcheck.core.content_id import ContentID, PeerAddress, PeerIdentity
from cidcheck.models import ProbeConfig
from cidcheck.session.base import ProbeSession
from cidcheck.utils.exceptions import PeerConnectionError, SendError

TARGET_PEER = "QmcgpsyWgH8Y8ajJz1Cu72KnS5uo2Aa2LpzU7kinSupNKC"
OTHER_PEER = "QmNnooDu7bfjPFoTZYxMNLWUQJyrVwtbZg5gBMjTezGAJN"
TARGET_ADDR = f"/ip4/127.0.0.1/tcp/4001/p2p/{TARGET_PEER}"


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("probe", "marks tests as probe pipeline tests"),
        ("session", "marks tests as session backend tests"),
        ("config", "marks tests as configuration tests"),
        ("output", "marks tests as output file tests"),
        ("export", "marks tests as export pipeline tests"),
        ("cli", "marks tests as CLI tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    """Keep user config files and CIDCHECK_* variables out of tests."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in list(os.environ):
        if name.startswith("CIDCHECK_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


def _cid_for(seed: str) -> ContentID:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    return ContentID.from_bytes(b"\x12\x20" + digest)


@pytest.fixture
def make_cid():
    """Deterministic CIDv0 for a seed string."""
    return _cid_for


@pytest.fixture
def cids():
    """Five distinct CIDs, A..E."""
    return [_cid_for(name) for name in "ABCDE"]


@pytest.fixture
def target():
    return PeerIdentity(TARGET_PEER)


@pytest.fixture
def other_peer():
    return PeerIdentity(OTHER_PEER)


@pytest.fixture
def target_addr():
    return TARGET_ADDR


@pytest.fixture
def probe_config():
    """Small, fast probe settings."""
    return ProbeConfig(batch_size=2, concurrency=1, batch_timeout=0.2, send_timeout=1.0)


class FakeSession(ProbeSession):
    """In-memory session that scripts replies and failures.

    ``responder(query, index)`` returns a list of ``(sender, Reply)`` pairs
    delivered shortly after the send returns. ``fail_sends`` holds the
    indexes of send calls that raise.
    """

    def __init__(
        self,
        responder=None,
        *,
        fail_sends=(),
        send_delay=0.0,
        reply_delay=0.0,
        connect_error=None,
    ):
        super().__init__()
        self.responder = responder
        self.fail_sends = set(fail_sends)
        self.send_delay = send_delay
        self.reply_delay = reply_delay
        self.connect_error = connect_error
        self.sent = []
        self.connected_to = None
        self.closed = False
        self.active_sends = 0
        self.max_active_sends = 0

    async def connect(self, address: PeerAddress, timeout: float) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_to = address

    async def send(self, query) -> None:
        index = len(self.sent)
        self.sent.append(query)
        self.active_sends += 1
        self.max_active_sends = max(self.max_active_sends, self.active_sends)
        try:
            if self.send_delay:
                await asyncio.sleep(self.send_delay)
            if index in self.fail_sends:
                raise SendError("stream reset")
        finally:
            self.active_sends -= 1

        if self.responder is None:
            return
        loop = asyncio.get_running_loop()
        for sender, reply in self.responder(query, index) or []:
            loop.call_later(self.reply_delay, self.deliver_reply, sender, reply)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_session():
    """Factory for scripted sessions."""
    return FakeSession


@pytest.fixture
def unreachable_session():
    return FakeSession(connect_error=PeerConnectionError("connection refused"))
