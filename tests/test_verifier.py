import json

import pytest

from conftest import FakeAnchor, run
from memchain.builder import ChainBuilder
from memchain.errors import AnchorFailure, TransactionFailure, VerificationError
from memchain.journal import AppendJournal
from memchain.record import MemoryRecord
from memchain.verifier import ChainVerifier

TS = "2026-01-01T00:00:00.000Z"


async def _chain(builder, n):
    results = []
    previous = None
    for i in range(n):
        result = await builder.append({"seq": i}, previous_cid=previous)
        results.append(result)
        previous = result.cid
    return results


def test_unanchored_agent_is_an_empty_valid_chain(store, anchor, codec):
    report = run(ChainVerifier(store, anchor, codec=codec).replay())
    assert report.ok
    assert report.length == 0
    assert report.head_cid is None


def test_replay_needs_head_or_anchor(store):
    with pytest.raises(VerificationError):
        run(ChainVerifier(store).replay())


def test_replay_from_explicit_head(store, anchor, signer, codec):
    async def scenario():
        results = await _chain(ChainBuilder(store, anchor, signer, codec=codec), 3)
        verifier = ChainVerifier(store, codec=codec)
        report = await verifier.replay(signer.address, head_cid=results[1].cid)
        assert report.ok and report.reached_genesis
        assert report.cids == [results[1].cid, results[0].cid]
        assert [r.payload for r in report.records] == [{"seq": 1}, {"seq": 0}]

    run(scenario())


def test_foreign_signature_is_reported_but_walk_continues(store, anchor, signer, other_signer, codec):
    async def scenario():
        genesis = await ChainBuilder(store, anchor, signer, codec=codec).append({"seq": 0})
        intruder = MemoryRecord.create(other_signer, {"seq": 1}, genesis.cid, TS)
        head = await store.put(intruder.to_bytes())

        report = await ChainVerifier(store, codec=codec).replay(signer.address, head_cid=head)
        assert not report.ok
        assert report.reached_genesis
        assert report.cids == [head, genesis.cid]
        assert len(report.problems) == 1
        assert "Bad signature" in report.problems[0]

    run(scenario())


def test_missing_previous_record_stops_the_walk(store, signer, codec):
    async def scenario():
        dangling = codec.cid_for_bytes(b"never stored")
        head = await store.put(MemoryRecord.create(signer, {"seq": 5}, dangling, TS).to_bytes())

        report = await ChainVerifier(store, codec=codec).replay(signer.address, head_cid=head)
        assert not report.ok
        assert not report.reached_genesis
        assert report.cids == [head]
        assert "Missing record" in report.problems[0]

    run(scenario())


def test_unreadable_record_stops_the_walk(store, signer, codec):
    async def scenario():
        head = await store.put(b"definitely not json")
        report = await ChainVerifier(store, codec=codec).replay(signer.address, head_cid=head)
        assert not report.ok
        assert report.length == 0

    run(scenario())


def test_record_with_bad_version_is_reported_as_unreadable(store, signer, codec):
    async def scenario():
        genesis = MemoryRecord.create(signer, {"seq": 0}, None, TS)
        envelope = dict(genesis.to_dict(), version="one")
        head = await store.put(json.dumps(envelope).encode("utf-8"))

        report = await ChainVerifier(store, codec=codec).replay(signer.address, head_cid=head)
        assert not report.ok
        assert report.length == 0
        assert "Unreadable record" in report.problems[0]

    run(scenario())


def test_depth_ceiling(store, anchor, signer, codec):
    async def scenario():
        await _chain(ChainBuilder(store, anchor, signer, codec=codec), 4)
        report = await ChainVerifier(store, anchor, codec=codec, max_depth=2).replay()
        assert not report.ok
        assert report.length == 2
        assert not report.reached_genesis

    run(scenario())


# --- reconcile ---

def _orphan(builder, anchor, payload, previous=None):
    async def go():
        anchor.fail_with = TransactionFailure("nonce too low")
        try:
            await builder.append(payload, previous_cid=previous)
        except AnchorFailure as e:
            return e.cid
        finally:
            anchor.fail_with = None
    return go()


def test_reconcile_lists_orphans_without_touching_chain(tmp_path, store, anchor, signer, codec):
    async def scenario():
        journal = AppendJournal(str(tmp_path / "journal.json"))
        builder = ChainBuilder(store, anchor, signer, codec=codec, journal=journal)
        orphan = await _orphan(builder, anchor, {"seq": 0})

        report = await ChainVerifier(store, anchor, codec=codec).reconcile(journal)
        assert [e.cid for e in report.orphans] == [orphan]
        assert report.reanchored == []
        assert anchor.tx_count == 0

    run(scenario())


def test_reanchor_only_valid_successors(tmp_path, store, anchor, signer, codec):
    async def scenario():
        journal = AppendJournal(str(tmp_path / "journal.json"))
        builder = ChainBuilder(store, anchor, signer, codec=codec, journal=journal)
        genesis = await builder.append({"seq": 0})

        successor = await _orphan(builder, anchor, {"seq": 1}, previous=genesis.cid)
        stale = await _orphan(builder, anchor, {"seq": "x"}, previous=None)

        report = await ChainVerifier(store, anchor, codec=codec).reconcile(journal, reanchor=True)
        assert report.reanchored == [successor]
        assert list(report.skipped) == [stale]
        assert await anchor.get_pointer() == successor
        assert [e.cid for e in journal.orphans()] == [stale]

        replay = await ChainVerifier(store, anchor, codec=codec).replay()
        assert replay.ok and replay.cids == [successor, genesis.cid]

    run(scenario())


def test_reanchor_failure_is_skipped(tmp_path, store, signer, codec):
    async def scenario():
        anchor = FakeAnchor(signer.address, codec)
        journal = AppendJournal(str(tmp_path / "journal.json"))
        builder = ChainBuilder(store, anchor, signer, codec=codec, journal=journal)
        orphan = await _orphan(builder, anchor, {"seq": 0})

        anchor.fail_with = TransactionFailure("still failing")
        report = await ChainVerifier(store, anchor, codec=codec).reconcile(journal, reanchor=True)
        assert report.reanchored == []
        assert orphan in report.skipped
        assert len(journal.orphans()) == 1

    run(scenario())
