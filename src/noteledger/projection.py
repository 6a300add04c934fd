"""Deterministic fold of ledger entries into notes and escalation states.

The projection is the only place entry effects are interpreted. The
reconciler, escalation coordinator, diffusion supervisor and replay service
all build one from a ledger prefix, so a given prefix always produces the
same notes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional

from .classifier import classify
from .hashing import GENESIS_HASH
from .models.escalation import (
    ContextAction,
    EscalationState,
    EscalationStatus,
    Resolution,
    Tier,
)
from .models.evidence import ContextWindow, FrameAvailability, FrameItem, TranscriptItem
from .models.ledger import EntryKind, LedgerEntry
from .models.note import Note, NoteCategory, NoteStatus
from .models.snapshot import SessionSnapshot

# (current status, newly observed tier) -> next status.
# Tiers only escalate stable -> warning -> critical; recovery from warning
# or critical resolves the machine, and resolved never leaves.
TRANSITIONS: dict[tuple[EscalationStatus, Tier], EscalationStatus] = {
    (EscalationStatus.STABLE, Tier.STABLE): EscalationStatus.STABLE,
    (EscalationStatus.STABLE, Tier.WARNING): EscalationStatus.WARNING,
    (EscalationStatus.STABLE, Tier.CRITICAL): EscalationStatus.CRITICAL,
    (EscalationStatus.WARNING, Tier.STABLE): EscalationStatus.RESOLVED,
    (EscalationStatus.WARNING, Tier.WARNING): EscalationStatus.WARNING,
    (EscalationStatus.WARNING, Tier.CRITICAL): EscalationStatus.CRITICAL,
    (EscalationStatus.CRITICAL, Tier.STABLE): EscalationStatus.RESOLVED,
    (EscalationStatus.CRITICAL, Tier.WARNING): EscalationStatus.RESOLVED,
    (EscalationStatus.CRITICAL, Tier.CRITICAL): EscalationStatus.CRITICAL,
    (EscalationStatus.RESOLVED, Tier.STABLE): EscalationStatus.RESOLVED,
    (EscalationStatus.RESOLVED, Tier.WARNING): EscalationStatus.RESOLVED,
    (EscalationStatus.RESOLVED, Tier.CRITICAL): EscalationStatus.RESOLVED,
}


def next_status(current: EscalationStatus, tier: Tier) -> EscalationStatus:
    return TRANSITIONS[(current, tier)]


class SessionProjection:
    """Mutable fold state for one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.notes: dict[str, Note] = {}
        self.escalations: dict[str, EscalationState] = {}
        self.transcripts: list[TranscriptItem] = []
        self.frames: list[FrameItem] = []
        self.revision_times: dict[str, list[datetime]] = {}
        self.last_sequence = -1
        self.tip_hash = GENESIS_HASH
        self.last_created_at: Optional[datetime] = None

    @classmethod
    def fold(cls, session_id: str, entries: Iterable[LedgerEntry]) -> "SessionProjection":
        projection = cls(session_id)
        for entry in entries:
            projection.apply(entry)
        return projection

    # ------------------------------------------------------------------
    # Entry effects
    # ------------------------------------------------------------------

    def apply(self, entry: LedgerEntry) -> None:
        if entry.session_id != self.session_id:
            raise ValueError(f"Entry from session {entry.session_id} applied to {self.session_id}")

        handler = {
            EntryKind.EVIDENCE_TRANSCRIPT: self._apply_transcript,
            EntryKind.EVIDENCE_FRAME: self._apply_frame,
            EntryKind.NOTE_CREATED: self._apply_note_created,
            EntryKind.NOTE_REVISION: self._apply_note_revision,
            EntryKind.CONTEXT_REQUEST: self._apply_context_request,
            EntryKind.RETRY_CAPTURE: self._apply_retry_capture,
            EntryKind.ESCALATION_RESOLVED: self._apply_escalation_resolved,
        }[entry.kind]
        handler(entry)

        self.last_sequence = entry.sequence
        self.tip_hash = entry.entry_hash
        self.last_created_at = entry.created_at

    def _apply_transcript(self, entry: LedgerEntry) -> None:
        p = entry.payload
        self.transcripts.append(
            TranscriptItem(
                sequence=entry.sequence,
                timestamp_seconds=float(p["timestamp_seconds"]),
                text=str(p.get("text", "")),
                confidence=float(p.get("confidence", 0.0)),
            )
        )

    def _apply_frame(self, entry: LedgerEntry) -> None:
        p = entry.payload
        self.frames.append(
            FrameItem(
                sequence=entry.sequence,
                timestamp_seconds=float(p["timestamp_seconds"]),
                blob_ref=str(p.get("blob_ref", "")),
                availability=FrameAvailability(p.get("availability", FrameAvailability.AVAILABLE.value)),
            )
        )

    def _apply_note_created(self, entry: LedgerEntry) -> None:
        p = entry.payload
        note_id = str(p["note_id"])
        note = Note(
            note_id=note_id,
            session_id=self.session_id,
            text=str(p["text"]),
            category=NoteCategory.coerce(p.get("category")),
            confidence=float(p["confidence"]),
            timestamp_seconds=float(p["timestamp_seconds"]),
            window_seconds=float(p.get("window_seconds", 0.0)),
            lineage=[entry.sequence],
            raw_transcript=str(p.get("raw_transcript", "")),
            evidence_gaps=[float(g) for g in p.get("evidence_gaps", [])],
        )
        self.notes[note_id] = note
        self.revision_times[note_id] = []
        self.escalations[note_id] = EscalationState(
            note_id=note_id,
            tier=classify(note.confidence),
            since_sequence=entry.sequence,
        )

    def _apply_note_revision(self, entry: LedgerEntry) -> None:
        p = entry.payload
        note = self.notes.get(str(p["note_id"]))
        if note is None:
            raise ValueError(f"Revision #{entry.sequence} references unknown note {p['note_id']}")

        note.text = str(p.get("text", note.text))
        note.category = NoteCategory.coerce(p.get("category", note.category))
        note.confidence = float(p.get("confidence", note.confidence))
        note.timestamp_seconds = float(p.get("timestamp_seconds", note.timestamp_seconds))
        note.window_seconds = float(p.get("window_seconds", note.window_seconds))
        if "raw_transcript" in p:
            note.raw_transcript = str(p["raw_transcript"])
        if "evidence_gaps" in p:
            note.evidence_gaps = [float(g) for g in p["evidence_gaps"]]
        if p.get("status") == NoteStatus.MERGED.value:
            note.status = NoteStatus.MERGED
            note.merged_into = str(p.get("merged_into")) if p.get("merged_into") else None
        note.lineage.append(entry.sequence)
        self.revision_times[note.note_id].append(entry.created_at)

        state = self.escalations[note.note_id]
        tier = classify(note.confidence)
        status = next_status(state.status, tier)
        if status == state.status:
            return
        if status == EscalationStatus.RESOLVED:
            state.resolved = True
            state.resolution = Resolution.CONFIDENCE_RECOVERED
            state.awaiting_user = False
        else:
            state.tier = tier
        state.since_sequence = entry.sequence

    def _apply_context_request(self, entry: LedgerEntry) -> None:
        state = self.escalations.get(str(entry.payload.get("note_id")))
        if state is None or state.resolved:
            return
        action = str(entry.payload.get("action"))
        state.attempts += 1
        state.last_action = action
        if action == ContextAction.USER_PROMPT.value:
            state.awaiting_user = True

    def _apply_retry_capture(self, entry: LedgerEntry) -> None:
        state = self.escalations.get(str(entry.payload.get("note_id")))
        if state is None or state.resolved:
            return
        state.attempts += 1
        state.last_action = EntryKind.RETRY_CAPTURE.value

    def _apply_escalation_resolved(self, entry: LedgerEntry) -> None:
        state = self.escalations.get(str(entry.payload.get("note_id")))
        if state is None or state.resolved:
            return
        state.resolved = True
        state.resolution = Resolution(entry.payload.get("resolution", Resolution.DISMISSED.value))
        state.awaiting_user = False
        state.since_sequence = entry.sequence

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_notes(self) -> list[Note]:
        return [n for n in self.ordered_notes() if n.is_active]

    def ordered_notes(self) -> list[Note]:
        return sorted(self.notes.values(), key=lambda n: (n.timestamp_seconds, n.note_id))

    def notes_near(self, timestamp_seconds: float, window_seconds: float) -> list[Note]:
        return [
            n for n in self.active_notes()
            if abs(n.timestamp_seconds - timestamp_seconds) <= window_seconds
        ]

    def notes_with_gap_near(self, timestamp_seconds: float, tolerance_seconds: float) -> list[Note]:
        return [
            n for n in self.active_notes()
            if any(abs(g - timestamp_seconds) <= tolerance_seconds for g in n.evidence_gaps)
        ]

    def revisions_since(self, note_id: str, since: datetime) -> list[datetime]:
        return sorted(t for t in self.revision_times.get(note_id, []) if t > since)

    def context_window(
        self,
        anchor_seconds: float,
        window_seconds: float,
        current_text: Optional[str] = None,
    ) -> ContextWindow:
        start = anchor_seconds - window_seconds
        end = anchor_seconds + window_seconds
        transcripts = sorted(
            (t for t in self.transcripts if start <= t.timestamp_seconds <= end),
            key=lambda t: (t.timestamp_seconds, t.sequence),
        )
        frames = sorted(
            (f for f in self.frames if start <= f.timestamp_seconds <= end),
            key=lambda f: (f.timestamp_seconds, f.sequence),
        )
        return ContextWindow(
            session_id=self.session_id,
            anchor_seconds=anchor_seconds,
            window_seconds=window_seconds,
            cursor=self.last_sequence,
            transcripts=transcripts,
            frames=frames,
            current_text=current_text,
        )

    def snapshot(self, rate_window_seconds: float = 3600.0) -> SessionSnapshot:
        notes: list[Note] = []
        for note in self.ordered_notes():
            copy = note.model_copy(deep=True)
            if self.last_created_at is not None:
                since = self.last_created_at - timedelta(seconds=rate_window_seconds)
                copy.revision_count_this_hour = len(self.revisions_since(note.note_id, since))
            notes.append(copy)
        escalations = [
            self.escalations[n.note_id].model_copy(deep=True)
            for n in self.ordered_notes()
        ]
        return SessionSnapshot(
            session_id=self.session_id,
            up_to_sequence=self.last_sequence,
            tip_hash=self.tip_hash,
            notes=notes,
            escalations=escalations,
            evidence_count=len(self.transcripts) + len(self.frames),
        )
