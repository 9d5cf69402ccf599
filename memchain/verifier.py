"""
Chain Verifier - replay an agent's memory chain backward from its pointer.

replay():
  pointer → record → previousCid → record → ... → genesis
  Per record: fetch from store, parse, check the signature recovers to the
  agent. Stops on a missing record, an unparseable record, a cycle, or the
  depth ceiling. Bad signatures are reported but the walk continues.

reconcile():
  Lists orphans from the append journal (stored, never anchored). With
  reanchor=True an orphan is anchored only if it is still a valid successor
  of the current pointer; anything else is reported and left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .codec import HashCodec, from_hex
from .config import WATCHER_LAWS
from .errors import AnchorError, DecodeError, NotFound, StorageFailure, VerificationError
from .journal import AppendJournal, JournalEntry
from .record import MemoryRecord
from .store import ContentStore

logger = logging.getLogger("memchain.verifier")


@dataclass
class VerificationReport:
    agent: str
    head_cid: Optional[str]
    ok: bool = True
    reached_genesis: bool = False
    cids: list[str] = field(default_factory=list)          # head first
    records: list[MemoryRecord] = field(default_factory=list)
    problems: list[str] = field(default_factory=list)

    @property
    def length(self) -> int:
        return len(self.cids)

    def fail(self, problem: str) -> None:
        self.ok = False
        self.problems.append(problem)


@dataclass
class ReconcileReport:
    orphans: list[JournalEntry] = field(default_factory=list)
    reanchored: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)  # cid → reason


class ChainVerifier:
    def __init__(
        self,
        store: ContentStore,
        anchor=None,
        codec: Optional[HashCodec] = None,
        max_depth: int = WATCHER_LAWS.MAX_REPLAY_DEPTH,
    ):
        self.store = store
        self.anchor = anchor
        self.codec = codec or HashCodec()
        self.max_depth = max_depth

    async def replay(
        self,
        agent_address: Optional[str] = None,
        head_cid: Optional[str] = None,
        max_depth: Optional[int] = None,
    ) -> VerificationReport:
        agent = agent_address or (self.anchor.agent_address if self.anchor else "")
        limit = max_depth or self.max_depth

        if head_cid is None:
            if self.anchor is None:
                raise VerificationError("replay() needs a head_cid or an anchor client")
            try:
                head_cid = await self.anchor.get_pointer(agent or None)
            except NotFound:
                logger.info(f"No pointer for {agent or 'agent'} - empty chain")
                return VerificationReport(agent=agent, head_cid=None, reached_genesis=True)

        report = VerificationReport(agent=agent, head_cid=head_cid)
        seen: set[bytes] = set()
        cid: Optional[str] = head_cid

        while cid is not None:
            if report.length >= limit:
                report.fail(f"Depth ceiling {limit} reached at {cid}")
                break
            try:
                digest = self.codec.digest_from_cid(cid)
            except DecodeError as e:
                report.fail(f"Invalid CID in chain: {e}")
                break
            if digest in seen:
                report.fail(f"Cycle detected at {cid}")
                break
            seen.add(digest)

            try:
                data = await self.store.get(cid)
            except StorageFailure as e:
                report.fail(f"Missing record {cid}: {e}")
                break
            try:
                record = MemoryRecord.from_bytes(data)
            except DecodeError as e:
                report.fail(f"Unreadable record {cid}: {e}")
                break

            if not record.verify(agent or None):
                report.fail(f"Bad signature on {cid} (expected {agent or record.signer or 'unknown'})")

            report.cids.append(cid)
            report.records.append(record)
            cid = record.previous_cid
        else:
            report.reached_genesis = True

        logger.info(
            f"Replay {'OK' if report.ok else 'FAILED'}: {report.length} records from {head_cid}"
            + ("" if report.ok else f" | {len(report.problems)} problems")
        )
        return report

    async def reconcile(self, journal: AppendJournal, reanchor: bool = False) -> ReconcileReport:
        report = ReconcileReport(orphans=journal.orphans())
        if not report.orphans:
            return report
        logger.info(f"Reconcile: {len(report.orphans)} orphaned records")
        if not reanchor:
            return report
        if self.anchor is None:
            raise VerificationError("reanchor needs an anchor client")

        try:
            current: Optional[str] = await self.anchor.get_pointer()
        except NotFound:
            current = None

        for entry in report.orphans:
            if not self._is_successor(entry, current):
                report.skipped[entry.cid] = (
                    f"pointer is {current or 'unset'}, record follows {entry.previous_cid or 'genesis'}"
                )
                continue
            try:
                receipt = await self.anchor.set_pointer(from_hex(entry.digest))
            except AnchorError as e:
                report.skipped[entry.cid] = f"{type(e).__name__}: {e}"
                logger.warning(f"Re-anchor of {entry.cid} failed: {e}")
                continue
            journal.mark_anchored(entry.cid, receipt.tx_hash)
            report.reanchored.append(entry.cid)
            current = entry.cid
            logger.info(f"Re-anchored orphan {entry.cid} tx={receipt.tx_hash[:16]}...")

        return report

    def _is_successor(self, entry: JournalEntry, current: Optional[str]) -> bool:
        if current is None:
            return entry.previous_cid is None
        if entry.previous_cid is None:
            return False
        try:
            return self.codec.same_content(entry.previous_cid, current)
        except DecodeError:
            return False
