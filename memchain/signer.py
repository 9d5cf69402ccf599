"""
Agent Signer - detached EIP-191 signatures over memory records.

What gets signed is the canonical JSON of (payload, previousCid, timestamp):
sorted keys, compact separators, UTF-8, no NaN/Infinity. The same triple
always produces the same bytes, so any holder of the record can recompute
them and recover the signer address.

No passwords. No key servers. The agent's wallet IS its identity.
"""

import json
import logging
from typing import Any, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

logger = logging.getLogger("memchain.signer")


def canonical_json(value: Any) -> bytes:
    """Deterministic JSON bytes. Raises ValueError for non-serializable input."""
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise ValueError(f"Payload does not serialize deterministically: {e}") from e


def signing_bytes(payload: Any, previous_cid: Optional[str], timestamp: str) -> bytes:
    """The exact bytes covered by a record signature."""
    return canonical_json({
        "data": payload,
        "previousCid": previous_cid,
        "timestamp": timestamp,
    })


class AgentSigner:
    """
    Holds the agent key and signs bytes with it.

    Usage:
        signer = AgentSigner(os.getenv("AGENT_PRIVATE_KEY"))
        sig = signer.sign(signing_bytes(payload, prev, ts))
        assert recover_signer(payload, prev, ts, sig) == signer.address
    """

    def __init__(self, private_key: str):
        if not private_key:
            raise ValueError("AgentSigner requires a private key")
        self._account = Account.from_key(private_key)
        # Kept for transaction signing; never logged
        self._private_key = private_key

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def private_key(self) -> str:
        return self._private_key

    def sign(self, data: bytes) -> str:
        """EIP-191 personal_sign over raw bytes, 0x-hex signature."""
        signed = self._account.sign_message(encode_defunct(primitive=data))
        signature = signed.signature.hex()
        return signature if signature.startswith("0x") else "0x" + signature

    def sign_record(self, payload: Any, previous_cid: Optional[str], timestamp: str) -> str:
        return self.sign(signing_bytes(payload, previous_cid, timestamp))


def recover_signer(
    payload: Any, previous_cid: Optional[str], timestamp: str, signature: str
) -> Optional[str]:
    """
    Recover the address that signed a record triple.

    Returns:
        The checksummed address, or None if the signature is malformed.
    """
    try:
        message = encode_defunct(primitive=signing_bytes(payload, previous_cid, timestamp))
        return Account.recover_message(message, signature=signature)
    except Exception as e:
        logger.warning(f"Signature recovery failed: {e}")
        return None
