"""
Append Journal - local record of every append that reached the store.

An entry is written for anchored records and for orphans (stored, anchor
failed). The journal is the input to the reconciliation sweep; it is
bookkeeping, so a failed write is logged and never breaks an append.

Persistence: JSON file, atomic write (write-to-tmp then rename).
"""

import os
import json
import time
import logging
import tempfile
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger("memchain.journal")


@dataclass
class JournalEntry:
    cid: str
    digest: str                    # 0x hex
    previous_cid: Optional[str]
    timestamp: str                 # record timestamp
    anchored: bool
    tx_hash: str = ""
    error: str = ""
    recorded_at: float = 0.0


class AppendJournal:
    """
    Usage:
        journal = AppendJournal("data/memchain/journal.json")
        journal.load()
        journal.record(JournalEntry(...))
        for orphan in journal.orphans(): ...
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._entries: list[JournalEntry] = []

    def load(self) -> bool:
        """Load from disk. Returns True if an existing journal was read."""
        if not self.path.exists():
            logger.info(f"No journal at {self.path} - starting fresh")
            return False
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._entries = [JournalEntry(**e) for e in data.get("entries", [])]
            logger.info(f"Journal RESTORED: {len(self._entries)} entries ({len(self.orphans())} orphaned)")
            return True
        except Exception as e:
            logger.error(f"Failed to load journal {self.path}: {e}")
            self._entries = []
            return False

    def save(self) -> bool:
        """Persist using atomic write. Returns False on failure (logged)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"entries": [asdict(e) for e in self._entries]}
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix="journal_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, str(self.path))
            return True
        except Exception as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error(f"Failed to save journal: {e}")
            return False

    def record(self, entry: JournalEntry) -> None:
        if not entry.recorded_at:
            entry.recorded_at = time.time()
        self._entries.append(entry)
        self.save()

    def mark_anchored(self, cid: str, tx_hash: str) -> bool:
        """Flip an orphan to anchored. Returns False if cid is unknown."""
        for entry in reversed(self._entries):
            if entry.cid == cid:
                entry.anchored = True
                entry.tx_hash = tx_hash
                entry.error = ""
                self.save()
                return True
        return False

    def entries(self) -> list[JournalEntry]:
        return list(self._entries)

    def orphans(self) -> list[JournalEntry]:
        return [e for e in self._entries if not e.anchored]

    def latest_anchored(self) -> Optional[JournalEntry]:
        for entry in reversed(self._entries):
            if entry.anchored:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)
