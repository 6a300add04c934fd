"""Backfill reconciler: re-derives notes when evidence arrives late.

Each evidence entry finds the notes whose window overlaps it (or whose last
synthesis reported an evidence gap at that time), re-runs synthesis with the
wider context and appends a note_revision only when the result moved past
the semantic delta threshold. Revisions per note are rate-capped; capped
candidates are deferred and re-evaluated with a fresh synthesis run once the
rolling window opens again.
"""

from __future__ import annotations

import difflib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from .classifier import classify
from .config import ReconcileConfig
from .errors import ChainConflict, SynthesisFailure
from .hashing import short_hash
from .ledger import Clock, LedgerStore
from .models.evidence import ContextWindow, SynthesisResult
from .models.ledger import EntryKind, LedgerEntry
from .models.note import Note, RevisionReason
from .projection import SessionProjection
from .synthesis import Synthesizer, synthesize_with_timeout

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    CREATED = "created"
    REVISED = "revised"
    UNCHANGED = "unchanged"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True)
class NoteOutcome:
    action: ReconcileAction
    note_id: Optional[str] = None
    entry: Optional[LedgerEntry] = None
    error: Optional[str] = None


@dataclass
class ReconcileOutcome:
    session_id: str
    evidence_sequence: int
    results: list[NoteOutcome] = field(default_factory=list)

    @property
    def appended(self) -> list[LedgerEntry]:
        return [r.entry for r in self.results if r.entry is not None]

    @property
    def touched_note_ids(self) -> list[str]:
        return [r.note_id for r in self.results if r.entry is not None and r.note_id]


@dataclass
class DeferredRevision:
    session_id: str
    note_id: str
    not_before: datetime
    trigger_sequences: list[int] = field(default_factory=list)


def make_note_id(session_id: str, evidence_sequence: int) -> str:
    return "n_" + short_hash(f"{session_id}:{evidence_sequence}", 10)


def text_similarity(a: str, b: str) -> float:
    if a == b:
        return 1.0
    return difflib.SequenceMatcher(None, a, b).ratio()


def is_significant(note: Note, result: SynthesisResult, config: ReconcileConfig) -> bool:
    """Semantic delta threshold: a tier change, or text or confidence moving past its threshold."""
    if classify(result.confidence) != classify(note.confidence):
        return True
    if text_similarity(note.text, result.text) < config.similarity_threshold:
        return True
    return round(abs(result.confidence - note.confidence), 6) >= config.confidence_delta


def note_payload(
    note_id: str,
    result: SynthesisResult,
    context: ContextWindow,
    timestamp_seconds: float,
) -> dict[str, Any]:
    return {
        "note_id": note_id,
        "text": result.text,
        "category": result.category.value,
        "confidence": result.confidence,
        "timestamp_seconds": timestamp_seconds,
        "window_seconds": context.window_seconds,
        "raw_transcript": context.raw_transcript,
        "evidence_gaps": list(result.evidence_gaps),
    }


def revision_payload(
    note: Note,
    result: SynthesisResult,
    context: ContextWindow,
    reason: RevisionReason,
) -> dict[str, Any]:
    payload = note_payload(note.note_id, result, context, note.timestamp_seconds)
    payload["reason"] = reason.value
    return payload


class BackfillReconciler:
    """Consumes evidence entries and appends note revisions."""

    def __init__(
        self,
        ledger: LedgerStore,
        synthesizer: Synthesizer,
        config: Optional[ReconcileConfig] = None,
        *,
        synthesis_timeout_seconds: float = 15.0,
        clock: Optional[Clock] = None,
    ):
        """Initialize the reconciler.

        Args:
            ledger: Ledger store shared with the other writers
            synthesizer: Synthesis collaborator
            config: Reconcile policies (window, delta threshold, rate cap)
            synthesis_timeout_seconds: Bound on each synthesis call
            clock: Current-time source for the rate cap; defaults to the ledger clock
        """
        self.ledger = ledger
        self.synthesizer = synthesizer
        self.config = config or ReconcileConfig()
        self.synthesis_timeout_seconds = synthesis_timeout_seconds
        self.clock: Clock = clock or ledger.clock
        self._deferred: dict[tuple[str, str], DeferredRevision] = {}
        self._lock = threading.Lock()

    def project(self, session_id: str) -> SessionProjection:
        return SessionProjection.fold(session_id, self.ledger.read(session_id))

    def advance(self, projection: SessionProjection, to_sequence: int) -> None:
        """Fold entries appended since the projection was built, up to to_sequence."""
        for entry in self.ledger.read(projection.session_id, projection.last_sequence + 1, to_sequence):
            projection.apply(entry)

    # ------------------------------------------------------------------
    # Evidence handling
    # ------------------------------------------------------------------

    def on_evidence(self, entry: LedgerEntry) -> ReconcileOutcome:
        """Reconcile notes affected by a newly appended evidence entry.

        Args:
            entry: An evidence_transcript or evidence_frame entry

        Returns:
            ReconcileOutcome listing what happened to each affected note
        """
        if not entry.kind.is_evidence:
            raise ValueError(f"on_evidence expects an evidence entry, got {entry.kind.value}")

        session_id = entry.session_id
        timestamp = float(entry.payload["timestamp_seconds"])
        projection = self.project(session_id)
        outcome = ReconcileOutcome(session_id=session_id, evidence_sequence=entry.sequence)

        affected: dict[str, Note] = {}
        for note in projection.notes_near(timestamp, self.config.window_seconds):
            affected[note.note_id] = note
        for note in projection.notes_with_gap_near(timestamp, self.config.gap_tolerance_seconds):
            affected.setdefault(note.note_id, note)

        if not affected:
            if entry.kind == EntryKind.EVIDENCE_TRANSCRIPT:
                outcome.results.append(self._create_note(projection, entry))
            else:
                logger.debug("Frame #%d in session %s touches no note", entry.sequence, session_id)
            return outcome

        for note in sorted(affected.values(), key=lambda n: (n.timestamp_seconds, n.note_id)):
            outcome.results.append(
                self.revise(projection, note, reason=RevisionReason.BACKFILL, trigger_sequence=entry.sequence)
            )

        logger.info(
            "Backfill for #%d in session %s: %s",
            entry.sequence,
            session_id,
            ", ".join(f"{r.note_id}={r.action.value}" for r in outcome.results),
        )
        return outcome

    def _create_note(self, projection: SessionProjection, entry: LedgerEntry) -> NoteOutcome:
        timestamp = float(entry.payload["timestamp_seconds"])
        context = projection.context_window(timestamp, self.config.window_seconds)
        try:
            result = self.synthesize(context)
        except SynthesisFailure as e:
            logger.warning("Synthesis failed creating note for #%d in %s: %s", entry.sequence, entry.session_id, e)
            return NoteOutcome(action=ReconcileAction.FAILED, error=str(e))

        note_id = make_note_id(entry.session_id, entry.sequence)
        created = self.ledger.append_with_retry(
            entry.session_id,
            EntryKind.NOTE_CREATED,
            note_payload(note_id, result, context, timestamp),
            references=context.evidence_sequences,
        )
        logger.info("Created note %s at %.1fs (confidence %.2f)", note_id, timestamp, result.confidence)
        return NoteOutcome(action=ReconcileAction.CREATED, note_id=note_id, entry=created)

    # ------------------------------------------------------------------
    # Revision policy
    # ------------------------------------------------------------------

    def synthesize(self, context: ContextWindow) -> SynthesisResult:
        return synthesize_with_timeout(self.synthesizer, context, self.synthesis_timeout_seconds)

    def is_significant(self, note: Note, result: SynthesisResult) -> bool:
        return is_significant(note, result, self.config)

    def _rate_limited_until(self, projection: SessionProjection, note_id: str, now: datetime) -> Optional[datetime]:
        window = timedelta(seconds=self.config.rate_window_seconds)
        recent = projection.revisions_since(note_id, now - window)
        if len(recent) < self.config.revision_cap:
            return None
        # The window opens once enough of the oldest revisions have aged out
        return recent[len(recent) - self.config.revision_cap] + window

    def revise(
        self,
        projection: SessionProjection,
        note: Note,
        *,
        reason: RevisionReason,
        trigger_sequence: Optional[int] = None,
        window_seconds: Optional[float] = None,
        enforce_cap: bool = True,
        now: Optional[datetime] = None,
    ) -> NoteOutcome:
        """Re-run synthesis for a note and append a revision if it changed enough.

        Args:
            projection: Projection the note and context are read from
            note: Current projection of the note
            reason: Recorded in the revision payload
            trigger_sequence: Evidence entry that caused this pass, if any
            window_seconds: Override for the context half-width
            enforce_cap: Apply the per-note revision rate cap
            now: Reference time for the rate cap; defaults to the clock

        Returns:
            NoteOutcome for the note
        """
        now = now or self.clock()
        if enforce_cap:
            not_before = self._rate_limited_until(projection, note.note_id, now)
            if not_before is not None:
                self._defer(projection.session_id, note.note_id, not_before, trigger_sequence)
                return NoteOutcome(action=ReconcileAction.DEFERRED, note_id=note.note_id)

        session_id = projection.session_id
        note_id = note.note_id
        if window_seconds is None:
            window_seconds = max(note.window_seconds, self.config.window_seconds)
        context = projection.context_window(note.timestamp_seconds, window_seconds, current_text=note.text)
        try:
            result = self.synthesize(context)
        except SynthesisFailure as e:
            # Keep last known-good state; the next evidence for this note retries
            logger.warning("Synthesis failed for note %s in %s: %s", note_id, session_id, e)
            return NoteOutcome(action=ReconcileAction.FAILED, note_id=note_id, error=str(e))
        self._discard_deferred(session_id, note_id)

        attempt = 0
        while True:
            attempt += 1
            if not self.is_significant(note, result):
                logger.debug("Discarding revision for %s: within delta threshold", note_id)
                return NoteOutcome(action=ReconcileAction.UNCHANGED, note_id=note_id)

            references = set(context.evidence_sequences)
            references.add(note.lineage[-1])
            try:
                entry = self.ledger.append(
                    session_id,
                    EntryKind.NOTE_REVISION,
                    revision_payload(note, result, context, reason),
                    references=sorted(references),
                    expected_tip=projection.tip_hash,
                )
            except ChainConflict:
                if attempt >= self.ledger.max_append_attempts:
                    raise
                logger.info("Tip moved while revising note %s; re-checking against the fresh note", note_id)
                self.advance(projection, self.ledger.tip(session_id).sequence)
                fresh = projection.notes.get(note_id)
                if fresh is None or not fresh.is_active:
                    return NoteOutcome(action=ReconcileAction.UNCHANGED, note_id=note_id)
                note = fresh
                if enforce_cap:
                    not_before = self._rate_limited_until(projection, note_id, now)
                    if not_before is not None:
                        self._defer(session_id, note_id, not_before, trigger_sequence)
                        return NoteOutcome(action=ReconcileAction.DEFERRED, note_id=note_id)
                continue

            self.advance(projection, entry.sequence)
            return NoteOutcome(action=ReconcileAction.REVISED, note_id=note_id, entry=entry)

    # ------------------------------------------------------------------
    # Deferred revisions
    # ------------------------------------------------------------------

    def _defer(self, session_id: str, note_id: str, not_before: datetime, trigger_sequence: Optional[int]) -> None:
        key = (session_id, note_id)
        with self._lock:
            deferred = self._deferred.get(key)
            if deferred is None:
                deferred = DeferredRevision(session_id=session_id, note_id=note_id, not_before=not_before)
                self._deferred[key] = deferred
            deferred.not_before = max(deferred.not_before, not_before)
            if trigger_sequence is not None and trigger_sequence not in deferred.trigger_sequences:
                deferred.trigger_sequences.append(trigger_sequence)
        logger.info("Revision cap reached for note %s; deferred until %s", note_id, not_before.isoformat())

    def _discard_deferred(self, session_id: str, note_id: str) -> None:
        with self._lock:
            self._deferred.pop((session_id, note_id), None)

    def restore_deferred(self, session_id: str) -> list[DeferredRevision]:
        """Rebuild the revisions a session is still owed from its ledger.

        The cap decision is replayed for every evidence entry in order; a later
        revision of the note settles whatever was deferred before it.

        Returns:
            The deferred revisions now queued for the session
        """
        projection = SessionProjection(session_id)
        owed: dict[str, DeferredRevision] = {}
        for entry in self.ledger.read(session_id):
            projection.apply(entry)
            if entry.kind == EntryKind.NOTE_REVISION:
                owed.pop(str(entry.payload["note_id"]), None)
                continue
            if not entry.kind.is_evidence:
                continue

            timestamp = float(entry.payload["timestamp_seconds"])
            affected = {n.note_id for n in projection.notes_near(timestamp, self.config.window_seconds)}
            affected.update(
                n.note_id for n in projection.notes_with_gap_near(timestamp, self.config.gap_tolerance_seconds)
            )
            for note_id in sorted(affected):
                not_before = self._rate_limited_until(projection, note_id, entry.created_at)
                if not_before is None:
                    continue
                item = owed.setdefault(
                    note_id, DeferredRevision(session_id=session_id, note_id=note_id, not_before=not_before)
                )
                item.not_before = max(item.not_before, not_before)
                item.trigger_sequences.append(entry.sequence)

        restored = [item for item in owed.values() if projection.notes[item.note_id].is_active]
        with self._lock:
            for item in restored:
                self._deferred.setdefault((session_id, item.note_id), item)
        if restored:
            logger.info("Restored %d deferred revision(s) for session %s", len(restored), session_id)
        return self.deferred(session_id)

    def deferred(self, session_id: Optional[str] = None) -> list[DeferredRevision]:
        with self._lock:
            items = list(self._deferred.values())
        if session_id is not None:
            items = [d for d in items if d.session_id == session_id]
        return sorted(items, key=lambda d: (d.not_before, d.session_id, d.note_id))

    def flush_deferred(self, now: Optional[datetime] = None) -> list[NoteOutcome]:
        """Re-evaluate deferred revisions whose rate window has opened.

        A fresh synthesis runs against the current ledger; the candidate that
        was capped is never replayed as-is.
        """
        now = now or self.clock()
        with self._lock:
            due = [d for d in self._deferred.values() if d.not_before <= now]
            for d in due:
                del self._deferred[(d.session_id, d.note_id)]

        outcomes: list[NoteOutcome] = []
        for item in sorted(due, key=lambda d: (d.not_before, d.session_id, d.note_id)):
            projection = self.project(item.session_id)
            note = projection.notes.get(item.note_id)
            if note is None or not note.is_active:
                continue
            outcomes.append(self.revise(projection, note, reason=RevisionReason.DEFERRED, now=now))
        return outcomes
