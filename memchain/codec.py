"""
Hash Codec - digest <-> CID conversion.

The on-chain pointer is a bare 32-byte BLAKE3 digest. The content store
speaks CIDs (CIDv1, BLAKE3 multihash). Converting between them is pure and
stateless:

    digest_from_cid(cid_from_digest(d)) == d        for any 32-byte d

The reverse direction is not guaranteed to be byte-identical: a CID with a
different codec or multibase carries the same digest and maps back to the
canonical form (dag-pb, base32 by default).
"""

import logging
from typing import Union

import blake3
from multiformats import CID, multihash

from .config import WATCHER_LAWS
from .errors import DecodeError

logger = logging.getLogger("memchain.codec")

HASH_FUNCTION = "blake3"


class HashCodec:
    """Stateless CID/digest converter (instances only pin codec + base)."""

    def __init__(self, codec: str = "dag-pb", base: str = "base32"):
        self.codec = codec
        self.base = base

    def digest_from_cid(self, cid: Union[str, CID]) -> bytes:
        """Extract the raw 32-byte BLAKE3 digest from a CID."""
        try:
            parsed = cid if isinstance(cid, CID) else CID.decode(cid)
        except Exception as e:
            raise DecodeError(f"Invalid CID {cid!r}: {e}") from e

        if parsed.hashfun.name != HASH_FUNCTION:
            raise DecodeError(
                f"CID {cid} uses {parsed.hashfun.name}, expected {HASH_FUNCTION}"
            )
        digest = bytes(parsed.raw_digest)
        if len(digest) != WATCHER_LAWS.DIGEST_SIZE:
            raise DecodeError(f"CID {cid} digest is {len(digest)} bytes, expected 32")
        return digest

    def cid_from_digest(self, digest: Union[bytes, str]) -> str:
        """Build the canonical CID string for a raw digest (bytes or 0x hex)."""
        raw = from_hex(digest) if isinstance(digest, str) else bytes(digest)
        if len(raw) != WATCHER_LAWS.DIGEST_SIZE:
            raise DecodeError(f"Digest must be 32 bytes, got {len(raw)}")
        try:
            wrapped = multihash.wrap(raw, HASH_FUNCTION)
            return str(CID(self.base, 1, self.codec, wrapped))
        except Exception as e:
            raise DecodeError(f"Cannot build CID from digest {to_hex(raw)}: {e}") from e

    def cid_for_bytes(self, data: bytes) -> str:
        """CID of raw bytes under this codec (used by in-process stores)."""
        return self.cid_from_digest(digest_bytes(data))

    def same_content(self, a: str, b: str) -> bool:
        """True when two CIDs carry the same digest (codec/base may differ)."""
        return self.digest_from_cid(a) == self.digest_from_cid(b)


def digest_bytes(data: bytes) -> bytes:
    """BLAKE3-256 of raw bytes."""
    return blake3.blake3(data).digest()


def to_hex(digest: bytes) -> str:
    return "0x" + bytes(digest).hex()


def from_hex(value: str) -> bytes:
    """Parse a 0x-prefixed (or bare) hex digest."""
    text = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise DecodeError(f"Invalid hex digest {value!r}") from e


def is_zero_digest(digest: bytes) -> bool:
    return bytes(digest) == WATCHER_LAWS.ZERO_DIGEST
