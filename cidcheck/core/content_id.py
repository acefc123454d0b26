"""Content identifiers, peer identities and the CID input file.

ContentID equality is the correlation key for the whole probe, so it is
defined on the binary CID rather than on whatever text encoding the operator
or the peer happened to use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
from cid import make_cid
from multiaddr import Multiaddr

from cidcheck.utils.exceptions import (
    InputFileError,
    InvalidContentIDError,
    InvalidPeerAddressError,
)

logger = logging.getLogger(__name__)

P2P_COMPONENT = "/p2p/"

# sha2-256, 32-byte digest
CIDV0_PREFIX = b"\x12\x20"
CIDV0_LENGTH = 34


@dataclass(frozen=True)
class ContentID:
    """Immutable, hashable content identifier."""

    raw: bytes
    text: str = field(compare=False)

    @classmethod
    def parse(cls, value: str) -> ContentID:
        """Decode a textual CID (CIDv0 base58 or multibase CIDv1)."""
        text = value.strip()
        if not text:
            msg = "Empty content identifier"
            raise InvalidContentIDError(msg)
        try:
            parsed = make_cid(text)
        except Exception as e:
            msg = f"Invalid content identifier: {text!r}"
            raise InvalidContentIDError(msg) from e
        return cls(raw=bytes(parsed.buffer), text=text)

    @classmethod
    def from_bytes(cls, data: bytes) -> ContentID:
        """Decode a binary CID, as carried in protocol messages.

        CIDv1 bytes start with their version byte; anything else must be a
        bare CIDv0 sha2-256 multihash.
        """
        data = bytes(data)
        details = {"hex": data.hex()}
        try:
            if data[:1] in (b"\x00", b"\x01"):
                parsed = make_cid(data)
            elif data.startswith(CIDV0_PREFIX) and len(data) == CIDV0_LENGTH:
                parsed = make_cid(0, "dag-pb", data)
            else:
                msg = "not a CIDv1 or a sha2-256 multihash"
                raise ValueError(msg)
        except Exception as e:
            msg = "Invalid binary content identifier"
            raise InvalidContentIDError(msg, details) from e
        return cls(raw=bytes(parsed.buffer), text=str(parsed))

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class PeerIdentity:
    """Opaque identifier of a remote peer."""

    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PeerAddress:
    """A dialable peer address: transport multiaddr plus peer identity."""

    multiaddr: str
    transport: str
    peer_id: PeerIdentity

    @classmethod
    def parse(cls, value: str) -> PeerAddress:
        """Parse ``/ip4/1.2.3.4/tcp/4001/p2p/<peer-id>`` style addresses."""
        try:
            addr = Multiaddr(value.strip())
        except Exception as e:
            msg = f"Invalid multiaddr: {value!r}"
            raise InvalidPeerAddressError(msg) from e

        try:
            peer = addr.value_for_protocol("p2p")
        except Exception as e:
            msg = f"Peer address has no /p2p/ component: {value!r}"
            raise InvalidPeerAddressError(msg) from e
        if not peer:
            msg = f"Peer address has no /p2p/ component: {value!r}"
            raise InvalidPeerAddressError(msg)

        full = str(addr)
        transport = full[: full.rfind(P2P_COMPONENT)]
        if not transport:
            msg = f"Peer address has no transport part: {value!r}"
            raise InvalidPeerAddressError(msg)

        return cls(multiaddr=full, transport=transport, peer_id=PeerIdentity(peer))

    def __str__(self) -> str:
        return self.multiaddr


def parse_cid_lines(lines: list[str]) -> list[ContentID]:
    """Decode newline-split input, tolerating trailing empty lines.

    Interior blank lines are rejected so that line numbers in the input
    file keep matching result positions (and resume offsets).
    """
    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1

    cids: list[ContentID] = []
    for number, line in enumerate(lines[:end], start=1):
        try:
            cids.append(ContentID.parse(line))
        except InvalidContentIDError as e:
            msg = f"Line {number}: {e.message}"
            raise InvalidContentIDError(msg, {"line": number}) from e
    return cids


async def load_cid_file(path: str | Path) -> list[ContentID]:
    """Read and decode a newline-delimited CID file."""
    file_path = Path(path)
    try:
        async with aiofiles.open(file_path, encoding="utf-8") as f:
            data = await f.read()
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Cannot read CID file {file_path}: {e}"
        raise InputFileError(msg) from e

    cids = parse_cid_lines(data.split("\n"))
    logger.info("Loaded %d CIDs from %s", len(cids), file_path)
    return cids
