"""
Anchor Contract Client - On-Chain Pointer Layer

Reads and writes the single mutable pointer that anchors an agent's memory
chain: one bytes32 (BLAKE3 digest of the latest record's CID) per address.

Design:
- Every RPC call runs on the default executor (sync Web3 provider)
- ABI holds one view, one write and one event
- Gas = estimate * GAS_BUFFER_RATIO; FALLBACK_GAS_LIMIT when estimation errors
- Zero digest = never anchored = NotFound
- Reverts map to Unauthorized or TransactionFailure and are raised

Designed for: agent memory chain
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from eth_abi import decode as abi_decode
from eth_account import Account
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError

from .codec import HashCodec, from_hex, is_zero_digest, to_hex
from .config import WATCHER_LAWS
from .errors import DecodeError, NotFound, TransactionFailure, Unauthorized

logger = logging.getLogger("memchain.anchor")


# ============================================================
# MINIMAL ABI - only what we call at runtime
# ============================================================

MEMORY_ABI = [
    # getLastMemoryHash(address agent) → bytes32
    {
        "inputs": [{"name": "agent", "type": "address"}],
        "name": "getLastMemoryHash",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    # setLastMemoryHash(bytes32 hash) - keyed by msg.sender
    {
        "inputs": [{"name": "hash", "type": "bytes32"}],
        "name": "setLastMemoryHash",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # LastMemoryHashSet(address indexed agent, bytes32 hash)
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "agent", "type": "address"},
            {"indexed": False, "name": "hash", "type": "bytes32"},
        ],
        "name": "LastMemoryHashSet",
        "type": "event",
    },
]

EVENT_NAME = "LastMemoryHashSet"
EVENT_SIGNATURE = "LastMemoryHashSet(address,bytes32)"
EVENT_TOPIC = HexBytes(keccak(text=EVENT_SIGNATURE))

# Revert reasons that mean "this key may not write"
_AUTH_REVERT_MARKERS = (
    "unauthorized",
    "not authorized",
    "not allowed",
    "caller is not",
    "forbidden",
    "access denied",
    "onlyowner",
)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class AnchorReceipt:
    """Result of an anchoring transaction that landed."""
    tx_hash: str
    block_number: int = 0
    gas_used: int = 0
    gas_price_wei: int = 0
    digest: str = ""              # 0x hex of the anchored digest


@dataclass
class PointerUpdate:
    """One decoded LastMemoryHashSet event."""
    agent: str
    digest: bytes
    block_number: int = 0
    tx_hash: str = ""


def decode_update(raw_log: Any) -> PointerUpdate:
    """
    Decode a raw LastMemoryHashSet log.

    Accepts both layouts seen in deployed contracts: agent indexed (topic 1,
    data = hash) and agent in data (data = address ++ hash).

    Raises:
        DecodeError: not this event, or malformed fields.
    """
    try:
        topics = [HexBytes(t) for t in raw_log["topics"]]
        data = HexBytes(raw_log.get("data", b""))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise DecodeError(f"Malformed log: {e}") from e

    if not topics or topics[0] != EVENT_TOPIC:
        raise DecodeError("Log is not a LastMemoryHashSet event")

    try:
        if len(topics) >= 2:
            if len(topics[1]) != 32 or len(data) != 32:
                raise DecodeError(
                    f"Unexpected field sizes: topic={len(topics[1])} data={len(data)}"
                )
            agent = to_checksum_address(topics[1][-20:])
            digest = bytes(data)
        else:
            agent_raw, digest = abi_decode(["address", "bytes32"], bytes(data))
            agent = to_checksum_address(agent_raw)
    except DecodeError:
        raise
    except Exception as e:
        raise DecodeError(f"Cannot decode {EVENT_NAME} payload: {e}") from e

    tx_hash = raw_log.get("transactionHash")
    return PointerUpdate(
        agent=agent,
        digest=bytes(digest),
        block_number=int(raw_log.get("blockNumber") or 0),
        tx_hash=Web3.to_hex(tx_hash) if tx_hash else "",
    )


def _is_authorization_revert(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _AUTH_REVERT_MARKERS)


# ============================================================
# ANCHOR CONTRACT CLIENT
# ============================================================

class AnchorContractClient:
    """
    Reads/writes the memory pointer contract for one agent key.

    Usage:
        client = AnchorContractClient.connect(rpc_url, contract_address, private_key)
        cid = await client.get_pointer()              # raises NotFound if never anchored
        receipt = await client.set_pointer(digest)    # raises Unauthorized / TransactionFailure
    """

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        private_key: str = "",
        agent_address: str = "",
        codec: Optional[HashCodec] = None,
        chain_id: int = 0,
        tx_timeout_seconds: float = WATCHER_LAWS.IO_TIMEOUT_SECONDS,
    ):
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = w3.eth.contract(address=self.contract_address, abi=MEMORY_ABI)
        self.codec = codec or HashCodec()
        self._private_key = private_key
        self._chain_id = chain_id
        self._tx_timeout = tx_timeout_seconds

        if private_key:
            derived = Account.from_key(private_key).address
            if agent_address and agent_address.lower() != derived.lower():
                logger.warning(
                    f"AGENT_ADDRESS {agent_address[:10]}... does not match key "
                    f"{derived[:10]}... - using key address"
                )
            self.agent_address = derived
        else:
            self.agent_address = Web3.to_checksum_address(agent_address) if agent_address else ""

        self._tx_count: int = 0
        self._last_error: str = ""

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        contract_address: str,
        private_key: str = "",
        agent_address: str = "",
        codec: Optional[HashCodec] = None,
        chain_id: int = 0,
        timeout_seconds: float = WATCHER_LAWS.IO_TIMEOUT_SECONDS,
    ) -> "AnchorContractClient":
        """Build a client over an HTTP JSON-RPC provider."""
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        client = cls(
            w3,
            contract_address,
            private_key=private_key,
            agent_address=agent_address,
            codec=codec,
            chain_id=chain_id,
            tx_timeout_seconds=timeout_seconds,
        )
        logger.info(
            f"Anchor client ready: contract={client.contract_address[:10]}... | "
            f"agent={client.agent_address[:10] + '...' if client.agent_address else 'read-only'}"
        )
        return client

    # ============================================================
    # READS
    # ============================================================

    async def get_digest(self, agent_address: Optional[str] = None) -> bytes:
        """Raw anchored digest for an address. Raises NotFound for zero."""
        address = agent_address or self.agent_address
        if not address:
            raise ValueError("No agent address to read the pointer for")
        checksum = Web3.to_checksum_address(address)

        try:
            raw = await asyncio.get_running_loop().run_in_executor(
                None,
                self.contract.functions.getLastMemoryHash(checksum).call,
            )
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"getLastMemoryHash failed for {checksum[:10]}...: {error}")
            self._last_error = error
            raise TransactionFailure(f"Pointer read failed: {error}") from e

        digest = bytes(raw)
        if is_zero_digest(digest):
            raise NotFound(f"{checksum} has never anchored a memory")
        return digest

    async def get_pointer(self, agent_address: Optional[str] = None) -> str:
        """Current pointer as a CID. Raises NotFound if never anchored."""
        digest = await self.get_digest(agent_address)
        return self.codec.cid_from_digest(digest)

    # ============================================================
    # WRITES
    # ============================================================

    async def set_pointer(self, digest: Union[bytes, str]) -> AnchorReceipt:
        """
        Anchor a digest for this client's key. Waits for one confirmation.

        Raises:
            Unauthorized: no key, or the contract rejected the sender.
            TransactionFailure: submission, revert, or receipt timeout.
        """
        if isinstance(digest, str):
            try:
                raw = from_hex(digest)
            except DecodeError as e:
                raise ValueError(f"Digest is not valid hex: {digest!r}") from e
        elif isinstance(digest, (bytes, bytearray)):
            raw = bytes(digest)
        else:
            raise ValueError(f"Digest must be bytes or a hex string, got {type(digest).__name__}")
        if len(raw) != WATCHER_LAWS.DIGEST_SIZE:
            raise ValueError(f"Digest must be 32 bytes, got {len(raw)}")
        if not self._private_key:
            raise Unauthorized("No signing key configured - pointer is read-only")

        tx_fn = self.contract.functions.setLastMemoryHash(raw)
        receipt = await self._send_tx(tx_fn)
        receipt.digest = to_hex(raw)
        return receipt

    async def _send_tx(self, tx_fn) -> AnchorReceipt:
        """
        Build, sign, and send a transaction. Handles gas estimation + nonce.

        Args:
            tx_fn: A web3 contract function call (e.g., contract.functions.setLastMemoryHash(h))
        """
        w3 = self.w3

        def _execute():
            chain_id = self._chain_id or w3.eth.chain_id
            nonce = w3.eth.get_transaction_count(self.agent_address)
            tx = tx_fn.build_transaction({
                "from": self.agent_address,
                "nonce": nonce,
                "gasPrice": w3.eth.gas_price,
                "chainId": chain_id,
            })

            # Gas estimation + 20% buffer. A revert here is a real rejection.
            try:
                gas_estimate = w3.eth.estimate_gas(tx)
                tx["gas"] = int(gas_estimate * WATCHER_LAWS.GAS_BUFFER_RATIO)
            except ContractLogicError:
                raise
            except Exception as gas_err:
                logger.warning(
                    f"Gas estimation failed, using default {WATCHER_LAWS.FALLBACK_GAS_LIMIT}: {gas_err}"
                )
                tx["gas"] = WATCHER_LAWS.FALLBACK_GAS_LIMIT

            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)

            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._tx_timeout)
            return receipt, Web3.to_hex(tx_hash)

        try:
            receipt, tx_hash_hex = await asyncio.get_running_loop().run_in_executor(
                None, _execute
            )
        except ContractLogicError as e:
            error = f"{type(e).__name__}: {e}"
            self._last_error = error
            if _is_authorization_revert(str(e)):
                logger.warning(f"TX UNAUTHORIZED: {error}")
                raise Unauthorized(f"Contract rejected sender {self.agent_address}: {e}") from e
            logger.warning(f"TX REJECTED: {error}")
            raise TransactionFailure(f"Anchoring rejected: {error}") from e
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR: {error}")
            self._last_error = error
            raise TransactionFailure(f"Anchoring failed: {error}") from e

        if receipt["status"] != 1:
            error = f"TX reverted: {tx_hash_hex}"
            logger.warning(f"TX FAILED: {error}")
            self._last_error = error
            raise TransactionFailure(error, tx_hash=tx_hash_hex)

        self._tx_count += 1
        gas_used = receipt.get("gasUsed", 0)
        gas_price_wei = receipt.get("effectiveGasPrice", 0)
        logger.info(f"TX SUCCESS: {tx_hash_hex[:16]}... | block={receipt.get('blockNumber', 0)} | gas={gas_used}")
        return AnchorReceipt(
            tx_hash=tx_hash_hex,
            block_number=receipt.get("blockNumber", 0),
            gas_used=gas_used,
            gas_price_wei=gas_price_wei,
        )

    # ============================================================
    # STATUS
    # ============================================================

    def get_status(self) -> dict:
        """Status for dashboard / debugging."""
        return {
            "contract": self.contract_address,
            "agent_address": self.agent_address[:10] + "..." if self.agent_address else "",
            "can_write": bool(self._private_key),
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
