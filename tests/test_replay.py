"""Tests for replay, export bundles and nightly verification."""

import json
import sqlite3

import pytest

from noteledger.errors import LedgerIntegrityError
from noteledger.models.evidence import FrameAvailability
from noteledger.models.ledger import EntryKind
from noteledger.replay import ReplayService


@pytest.fixture
def recorded(make_engine):
    """Engine with a short session: a note, a backfill revision and two frames."""
    engine = make_engine()
    engine.ingest_transcript("s1", 10.0, "turn left here", 0.9)
    engine.ingest_transcript("s1", 15.0, "the shot is blurry", 0.5)
    engine.ingest_frame("s1", 12.0, "frames/12.jpg")
    engine.ingest_frame("s1", 80.0, "frames/80.jpg", FrameAvailability.EXPIRED)
    return engine


def test_replay_is_deterministic(recorded):
    first = recorded.replay("s1")
    second = recorded.replay("s1")

    assert first.canonical_json() == second.canonical_json()
    assert first.snapshot_hash == second.snapshot_hash
    assert first.up_to_sequence == recorded.ledger.tip("s1").sequence


def test_replay_prefix_excludes_later_entries(recorded):
    snapshot = recorded.replay("s1", up_to_sequence=0)

    assert snapshot.notes == []
    assert snapshot.evidence_count == 1
    assert snapshot.up_to_sequence == 0


def test_replay_matches_live_notes(recorded):
    snapshot = recorded.replay("s1")
    live = recorded.get_notes("s1")

    assert [n.note_id for n in snapshot.notes] == [n.note_id for n in live]
    assert [n.lineage for n in snapshot.notes] == [n.lineage for n in live]


def test_replay_counts_recent_revisions(recorded):
    note = recorded.replay("s1").notes[0]

    assert note.revision_count_this_hour == len(note.lineage) - 1


def test_export_hash_is_stable(recorded):
    first = recorded.export("s1")
    second = recorded.export("s1")

    assert first.bundle_hash
    assert first.bundle_hash == second.bundle_hash
    assert first.bundle_hash == first.content_hash()
    assert first.chain_valid


def test_export_reports_evidence_availability(recorded):
    checked = []

    def blob_checker(blob_ref):
        checked.append(blob_ref)
        return False

    bundle = recorded.export("s1", blob_checker=blob_checker)
    frames = [e for e in bundle.evidence if e.kind == EntryKind.EVIDENCE_FRAME]
    transcripts = [e for e in bundle.evidence if e.kind == EntryKind.EVIDENCE_TRANSCRIPT]

    assert all(t.blob_present for t in transcripts)
    assert [(f.blob_ref, f.availability, f.blob_present) for f in frames] == [
        ("frames/12.jpg", FrameAvailability.AVAILABLE, False),
        ("frames/80.jpg", FrameAvailability.EXPIRED, False),
    ]
    # Expired frames are not looked up
    assert checked == ["frames/12.jpg"]


def test_export_changes_when_ledger_grows(recorded):
    before = recorded.export("s1")
    recorded.ingest_transcript("s1", 200.0, "music is too loud", 0.9)

    assert recorded.export("s1").bundle_hash != before.bundle_hash


def test_verify_passes_for_untouched_ledger(recorded):
    result = recorded.verify("s1")

    assert result.ok
    assert result.problems == []
    assert result.snapshot_hash == recorded.replay("s1").snapshot_hash


def test_verify_detects_tampering(recorded):
    conn = sqlite3.connect(str(recorded.ledger.db_path))
    with conn:
        conn.execute(
            "UPDATE entries SET payload_json = ? WHERE session_id = ? AND sequence = 0",
            ('{"confidence": 0.9, "text": "turn right here", "timestamp_seconds": 10.0}', "s1"),
        )
    conn.close()

    service = ReplayService(recorded.ledger)
    result = service.verify("s1")

    assert not result.ok
    assert not result.chain.valid
    with pytest.raises(LedgerIntegrityError):
        service.verify_or_raise("s1")


def test_write_bundle(recorded, tmp_path):
    bundle = recorded.export("s1")

    path = ReplayService.write_bundle(bundle, tmp_path / "exports")

    assert path.name == f"s1_{bundle.tip_sequence:06d}.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["bundle_hash"] == bundle.bundle_hash
    assert data["snapshot"]["session_id"] == "s1"
