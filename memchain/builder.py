"""
Chain Builder - append one signed record to the agent's memory chain.

    sign → serialize → store.put → CID→digest → set_pointer(digest) → receipt

Guarantees:
- Exactly one store write and at most one ledger write per call
- Anchoring never runs without a stored record (StorageFailure stops early)
- Anchor failure leaves an orphan in the store, reported via AnchorFailure;
  nothing is rolled back and nothing is retried here
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .anchor import AnchorReceipt
from .codec import HashCodec, to_hex
from .config import WATCHER_LAWS
from .errors import AnchorFailure, DecodeError, StorageFailure
from .journal import AppendJournal, JournalEntry
from .record import MemoryRecord
from .signer import AgentSigner
from .store import ContentStore

logger = logging.getLogger("memchain.builder")


@dataclass
class AppendResult:
    cid: str
    digest: bytes
    previous_cid: Optional[str]
    timestamp: str
    receipt: AnchorReceipt

    @property
    def digest_hex(self) -> str:
        return to_hex(self.digest)

    @property
    def tx_hash(self) -> str:
        return self.receipt.tx_hash

    @property
    def block_number(self) -> int:
        return self.receipt.block_number


class ChainBuilder:
    """
    Usage:
        builder = ChainBuilder(store, anchor, signer)
        first = await builder.append({"type": "note"})
        second = await builder.append({"type": "note2"}, previous_cid=first.cid)
    """

    def __init__(
        self,
        store: ContentStore,
        anchor,
        signer: AgentSigner,
        codec: Optional[HashCodec] = None,
        journal: Optional[AppendJournal] = None,
        io_timeout_seconds: float = WATCHER_LAWS.IO_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.anchor = anchor
        self.signer = signer
        self.codec = codec or HashCodec()
        self.journal = journal
        self.io_timeout = io_timeout_seconds
        self.append_count = 0
        self.orphan_count = 0

    async def append(
        self,
        payload: Any,
        previous_cid: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> AppendResult:
        """
        Store and anchor one record.

        Raises:
            ValueError: payload is not deterministically serializable.
            StorageFailure: store write failed; nothing anchored.
            AnchorFailure: stored (see .cid) but the pointer was not updated.
        """
        record = MemoryRecord.create(self.signer, payload, previous_cid, timestamp)
        data = record.to_bytes()
        metadata = {
            "name": f"agent-memory-{record.timestamp}.json",
            "mime_type": "application/json",
        }

        try:
            cid = await asyncio.wait_for(self.store.put(data, metadata), timeout=self.io_timeout)
        except StorageFailure:
            raise
        except asyncio.TimeoutError as e:
            raise StorageFailure(f"Store write timed out after {self.io_timeout}s") from e
        except Exception as e:
            raise StorageFailure(f"Store write failed: {type(e).__name__}: {e}") from e

        try:
            digest = self.codec.digest_from_cid(cid)
        except DecodeError as e:
            raise StorageFailure(f"Store returned an unusable CID {cid}: {e}") from e

        logger.info(f"Setting last memory hash: {to_hex(digest)} (cid={cid})")
        try:
            receipt = await self.anchor.set_pointer(digest)
        except Exception as e:
            self.orphan_count += 1
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"Anchoring failed - record {cid} stored but unanchored: {error}")
            self._journal(record, cid, digest, anchored=False, error=error)
            raise AnchorFailure(
                f"Record {cid} stored but not anchored: {error}", cid=cid, digest=digest, cause=e
            ) from e

        self.append_count += 1
        self._journal(record, cid, digest, anchored=True, tx_hash=receipt.tx_hash)
        logger.info(
            f"Memory appended: cid={cid} previous={previous_cid or 'genesis'} tx={receipt.tx_hash[:16]}..."
        )
        return AppendResult(
            cid=cid,
            digest=digest,
            previous_cid=previous_cid,
            timestamp=record.timestamp,
            receipt=receipt,
        )

    def _journal(
        self,
        record: MemoryRecord,
        cid: str,
        digest: bytes,
        anchored: bool,
        tx_hash: str = "",
        error: str = "",
    ) -> None:
        if self.journal is None:
            return
        try:
            self.journal.record(JournalEntry(
                cid=cid,
                digest=to_hex(digest),
                previous_cid=record.previous_cid,
                timestamp=record.timestamp,
                anchored=anchored,
                tx_hash=tx_hash,
                error=error,
            ))
        except Exception as e:
            logger.error(f"Journal write failed for {cid}: {e}")
