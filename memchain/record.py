"""
Memory Record - the signed envelope that gets content-addressed.

Wire format (canonical JSON, sorted keys):
    {
      "payload": <opaque>,
      "previousCid": "<cid>" | null,
      "signature": "0x...",
      "signer": "0x<address>",
      "timestamp": "2026-01-01T00:00:00.000Z",
      "version": 1
    }
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import DecodeError
from .signer import AgentSigner, canonical_json, recover_signer

RECORD_VERSION = 1


def utc_timestamp() -> str:
    """ISO-8601 UTC with millisecond precision and Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class MemoryRecord:
    payload: Any
    previous_cid: Optional[str]
    signature: str
    timestamp: str
    signer: str = ""
    version: int = RECORD_VERSION

    @property
    def is_genesis(self) -> bool:
        return self.previous_cid is None

    @classmethod
    def create(
        cls,
        signer: AgentSigner,
        payload: Any,
        previous_cid: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> "MemoryRecord":
        """Sign (payload, previous_cid, timestamp) and build the envelope."""
        ts = timestamp or utc_timestamp()
        return cls(
            payload=payload,
            previous_cid=previous_cid,
            signature=signer.sign_record(payload, previous_cid, ts),
            timestamp=ts,
            signer=signer.address,
        )

    def to_dict(self) -> dict:
        return {
            "payload": self.payload,
            "previousCid": self.previous_cid,
            "signature": self.signature,
            "signer": self.signer,
            "timestamp": self.timestamp,
            "version": self.version,
        }

    def to_bytes(self) -> bytes:
        return canonical_json(self.to_dict())

    @classmethod
    def from_bytes(cls, data: bytes) -> "MemoryRecord":
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"Record is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise DecodeError("Record must be a JSON object")
        for key in ("payload", "signature", "timestamp"):
            if key not in raw:
                raise DecodeError(f"Record missing '{key}'")
        previous = raw.get("previousCid")
        if previous is not None and not isinstance(previous, str):
            raise DecodeError("previousCid must be a string or null")
        version = raw.get("version", RECORD_VERSION)
        if not isinstance(version, int) or isinstance(version, bool):
            raise DecodeError(f"version must be an integer, got {version!r}")
        return cls(
            payload=raw["payload"],
            previous_cid=previous,
            signature=str(raw["signature"]),
            timestamp=str(raw["timestamp"]),
            signer=str(raw.get("signer", "")),
            version=version,
        )

    def recover_signer(self) -> Optional[str]:
        return recover_signer(self.payload, self.previous_cid, self.timestamp, self.signature)

    def verify(self, expected_signer: Optional[str] = None) -> bool:
        """Signature recovers to expected_signer (or the embedded signer)."""
        expected = expected_signer or self.signer
        if not expected:
            return False
        recovered = self.recover_signer()
        return recovered is not None and recovered.lower() == expected.lower()
