import json

from memchain.journal import AppendJournal, JournalEntry


def _entry(cid, anchored, previous=None):
    return JournalEntry(
        cid=cid,
        digest="0x" + "01" * 32,
        previous_cid=previous,
        timestamp="2026-01-01T00:00:00.000Z",
        anchored=anchored,
    )


def test_journal_persists_across_instances(tmp_path):
    path = tmp_path / "state" / "journal.json"
    journal = AppendJournal(str(path))
    assert journal.load() is False

    journal.record(_entry("bafy-a", anchored=True))
    journal.record(_entry("bafy-b", anchored=False, previous="bafy-a"))
    assert path.exists()

    restored = AppendJournal(str(path))
    assert restored.load() is True
    assert len(restored) == 2
    assert [e.cid for e in restored.orphans()] == ["bafy-b"]
    assert restored.latest_anchored().cid == "bafy-a"
    assert all(e.recorded_at > 0 for e in restored.entries())


def test_mark_anchored_clears_orphan(tmp_path):
    journal = AppendJournal(str(tmp_path / "journal.json"))
    entry = _entry("bafy-b", anchored=False)
    entry.error = "TransactionFailure: nonce too low"
    journal.record(entry)

    assert journal.mark_anchored("bafy-b", "0xfeed") is True
    assert journal.mark_anchored("bafy-unknown", "0xfeed") is False
    assert journal.orphans() == []

    on_disk = json.loads((tmp_path / "journal.json").read_text(encoding="utf-8"))
    assert on_disk["entries"][0]["tx_hash"] == "0xfeed"
    assert on_disk["entries"][0]["error"] == ""


def test_corrupt_journal_starts_empty(tmp_path):
    path = tmp_path / "journal.json"
    path.write_text("{not json", encoding="utf-8")
    journal = AppendJournal(str(path))
    assert journal.load() is False
    assert len(journal) == 0
    assert journal.latest_anchored() is None
