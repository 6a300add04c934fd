"""Tests for the ledger fold and the escalation state machine."""

from noteledger.models.escalation import EscalationStatus, Resolution, Tier
from noteledger.models.ledger import EntryKind
from noteledger.projection import TRANSITIONS, SessionProjection, next_status


def _note_created(note_id: str, confidence: float, t: float = 10.0) -> dict:
    return {
        "note_id": note_id,
        "text": "Turn left here",
        "category": "visual",
        "confidence": confidence,
        "timestamp_seconds": t,
        "window_seconds": 30.0,
        "raw_transcript": "turn left here",
        "evidence_gaps": [],
    }


def _revision(note_id: str, confidence: float, t: float = 10.0) -> dict:
    payload = _note_created(note_id, confidence, t)
    payload.pop("raw_transcript")
    payload["reason"] = "backfill"
    return payload


def test_transition_table_covers_every_pair():
    assert len(TRANSITIONS) == len(EscalationStatus) * len(Tier)


def test_resolved_is_terminal():
    for tier in Tier:
        assert next_status(EscalationStatus.RESOLVED, tier) == EscalationStatus.RESOLVED


def test_tiers_escalate_and_recovery_resolves():
    assert next_status(EscalationStatus.STABLE, Tier.WARNING) == EscalationStatus.WARNING
    assert next_status(EscalationStatus.WARNING, Tier.CRITICAL) == EscalationStatus.CRITICAL
    assert next_status(EscalationStatus.CRITICAL, Tier.WARNING) == EscalationStatus.RESOLVED
    assert next_status(EscalationStatus.WARNING, Tier.STABLE) == EscalationStatus.RESOLVED
    assert next_status(EscalationStatus.STABLE, Tier.STABLE) == EscalationStatus.STABLE


def test_fold_tracks_lineage_and_escalation(ledger):
    ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, {"timestamp_seconds": 10.0, "text": "x", "confidence": 0.5})
    ledger.append("s1", EntryKind.NOTE_CREATED, _note_created("n1", 0.55), references=[0])
    ledger.append(
        "s1",
        EntryKind.CONTEXT_REQUEST,
        {"note_id": "n1", "action": "expand_window", "timestamp_seconds": 10.0, "window_seconds": 60.0},
        references=[1],
    )
    ledger.append("s1", EntryKind.NOTE_REVISION, _revision("n1", 0.72), references=[0, 1])

    projection = SessionProjection.fold("s1", ledger.read("s1"))
    note = projection.notes["n1"]
    state = projection.escalations["n1"]

    assert note.lineage == [1, 3]
    assert note.confidence == 0.72
    assert state.status == EscalationStatus.RESOLVED
    assert state.resolution == Resolution.CONFIDENCE_RECOVERED
    assert state.attempts == 1
    assert state.last_action == "expand_window"


def test_resolved_state_never_reopens(ledger):
    ledger.append("s1", EntryKind.NOTE_CREATED, _note_created("n1", 0.5))
    ledger.append("s1", EntryKind.ESCALATION_RESOLVED, {"note_id": "n1", "resolution": "dismissed"}, references=[0])
    ledger.append("s1", EntryKind.NOTE_REVISION, _revision("n1", 0.3), references=[0])
    ledger.append(
        "s1",
        EntryKind.CONTEXT_REQUEST,
        {"note_id": "n1", "action": "user_prompt", "timestamp_seconds": 10.0, "window_seconds": 30.0},
        references=[2],
    )

    state = SessionProjection.fold("s1", ledger.read("s1")).escalations["n1"]

    assert state.status == EscalationStatus.RESOLVED
    assert state.resolution == Resolution.DISMISSED
    assert not state.awaiting_user


def test_user_prompt_marks_awaiting_user(ledger):
    ledger.append("s1", EntryKind.NOTE_CREATED, _note_created("n1", 0.4))
    ledger.append(
        "s1",
        EntryKind.CONTEXT_REQUEST,
        {"note_id": "n1", "action": "user_prompt", "timestamp_seconds": 10.0, "window_seconds": 30.0},
        references=[0],
    )

    state = SessionProjection.fold("s1", ledger.read("s1")).escalations["n1"]

    assert state.status == EscalationStatus.CRITICAL
    assert state.awaiting_user


def test_context_window_and_ordering(ledger):
    for t, text in [(12.0, "b"), (5.0, "a"), (50.0, "far")]:
        ledger.append("s1", EntryKind.EVIDENCE_TRANSCRIPT, {"timestamp_seconds": t, "text": text, "confidence": 0.9})
    ledger.append("s1", EntryKind.NOTE_CREATED, _note_created("n2", 0.9, t=20.0))
    ledger.append("s1", EntryKind.NOTE_CREATED, _note_created("n1", 0.9, t=20.0))
    ledger.append("s1", EntryKind.NOTE_CREATED, _note_created("n0", 0.9, t=3.0))

    projection = SessionProjection.fold("s1", ledger.read("s1"))
    window = projection.context_window(10.0, 5.0)

    assert [t.text for t in window.transcripts] == ["a", "b"]
    assert window.cursor == 5
    assert [n.note_id for n in projection.ordered_notes()] == ["n0", "n1", "n2"]
