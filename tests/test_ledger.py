"""Tests for the hash-chained ledger store."""

import sqlite3

import pytest

from noteledger.errors import ChainConflict
from noteledger.hashing import GENESIS_HASH, payload_hash
from noteledger.ledger import EMPTY_TIP, LedgerStore, PendingEntry
from noteledger.models.ledger import EntryKind


def _transcript(t: float, text: str = "hello", confidence: float = 0.9) -> dict:
    return {"timestamp_seconds": t, "text": text, "confidence": confidence}


def test_append_builds_gapless_hash_chain(ledger):
    """Sequences start at 0 and each entry links to the previous hash."""
    entries = [ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(float(i))) for i in range(5)]

    assert [e.sequence for e in entries] == [0, 1, 2, 3, 4]
    assert entries[0].prev_hash == GENESIS_HASH
    for prev, entry in zip(entries, entries[1:]):
        assert entry.prev_hash == prev.entry_hash
    for entry in entries:
        assert entry.payload_hash == payload_hash(entry.payload)
        assert entry.recompute_hash() == entry.entry_hash

    report = ledger.verify_chain("s1")
    assert report.valid
    assert report.entries == 5


def test_sessions_have_independent_chains(ledger):
    a = ledger.append("a", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))
    b = ledger.append("b", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))

    assert a.sequence == b.sequence == 0
    assert a.entry_hash != b.entry_hash
    assert ledger.sessions() == ["a", "b"]


def test_verify_chain_detects_tampered_payload(ledger):
    for i in range(3):
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(float(i)))

    conn = sqlite3.connect(str(ledger.db_path))
    with conn:
        conn.execute(
            "UPDATE entries SET payload_json = ? WHERE session_id = ? AND sequence = 1",
            ('{"confidence": 0.1, "text": "edited", "timestamp_seconds": 1.0}', "s1"),
        )
    conn.close()

    report = ledger.verify_chain("s1")
    assert not report.valid
    assert any("#1: payload_hash mismatch" in p for p in report.problems)


def test_expected_tip_mismatch_raises_chain_conflict(ledger):
    first = ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(2.0), expected_tip=first.entry_hash)

    with pytest.raises(ChainConflict) as exc_info:
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(3.0), expected_tip=first.entry_hash)

    assert exc_info.value.expected == first.entry_hash
    assert ledger.tip("s1").sequence == 1


def _stale_tip_once(monkeypatch, store: LedgerStore):
    """Make the next tip read return an empty chain, as if a writer raced us."""
    original = LedgerStore._read_tip
    calls = {"n": 0}

    def read_tip(self, conn, session_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return EMPTY_TIP
        return original(self, conn, session_id)

    monkeypatch.setattr(LedgerStore, "_read_tip", read_tip)
    return calls


def test_concurrent_append_surfaces_chain_conflict(ledger, monkeypatch):
    """Insert at an already-taken sequence is rejected by the store."""
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))
    _stale_tip_once(monkeypatch, ledger)

    with pytest.raises(ChainConflict):
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(2.0))

    assert ledger.tip("s1").sequence == 0
    assert ledger.verify_chain("s1").valid


def test_append_with_retry_rereads_tip(ledger, monkeypatch):
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))
    _stale_tip_once(monkeypatch, ledger)

    entry = ledger.append_with_retry("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(2.0))

    assert entry.sequence == 1
    assert ledger.verify_chain("s1").valid


def test_append_batch_is_all_or_nothing(ledger):
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))
    items = [
        PendingEntry(kind=EntryKind.EVIDENCE_TRANSCRIPT, payload=_transcript(2.0)),
        # Not JSON-serializable: fails while inserting the second row
        PendingEntry(kind=EntryKind.EVIDENCE_TRANSCRIPT, payload={"timestamp_seconds": 3.0, "blob": object()}),
    ]

    with pytest.raises(TypeError):
        ledger.append_batch("s1", items)

    assert ledger.tip("s1").sequence == 0


def test_append_batch_links_entries(ledger):
    entries = ledger.append_batch(
        "s1",
        [
            PendingEntry(kind=EntryKind.EVIDENCE_TRANSCRIPT, payload=_transcript(1.0)),
            PendingEntry(kind=EntryKind.EVIDENCE_TRANSCRIPT, payload=_transcript(2.0), references=(0,)),
        ],
    )

    assert [e.sequence for e in entries] == [0, 1]
    assert entries[1].prev_hash == entries[0].entry_hash
    assert entries[1].references == [0]
    assert ledger.verify_chain("s1").valid


def test_references_must_point_backwards(ledger):
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0))

    with pytest.raises(ValueError):
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(2.0), references=[1])


def test_read_range_is_restartable_and_bounded(ledger):
    """Page size is 4 in the fixture, so ten entries span three pages."""
    for i in range(10):
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(float(i)))

    entries = ledger.read("s1")
    first = [e.sequence for e in entries]
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(10.0))
    second = [e.sequence for e in entries]

    assert first == list(range(10))
    assert second == first
    assert len(entries) == 10
    assert [e.sequence for e in ledger.read("s1", 3, 5)] == [3, 4, 5]


def test_tail_returns_last_entries_oldest_first(ledger):
    for i in range(6):
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(float(i)))

    assert [e.sequence for e in ledger.tail("s1", 3)] == [3, 4, 5]
    assert ledger.tail("missing", 3) == []


def test_entries_survive_reopen(tmp_path, clock):
    db = tmp_path / "ledger.sqlite"
    store = LedgerStore(db, clock=clock)
    written = store.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, _transcript(1.0, "café"))

    reopened = LedgerStore(db, clock=clock)
    read_back = reopened.get("s1", 0)

    assert read_back == written
    assert reopened.verify_chain("s1").valid
