"""NoteEngine: the facade that ingests evidence and serves notes.

Wires the ledger, reconciler, escalation coordinator, diffusion supervisor
and replay service together, and publishes session events for UI
subscribers.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .collaborators import (
    BudgetCostGovernor,
    CaptureClient,
    CostGovernor,
    NullCaptureClient,
    PromptSink,
    RecordingPromptSink,
)
from .config import NoteLedgerConfig
from .diffusion import DiffusionSupervisor
from .escalation import EscalationCoordinator, LadderOutcome
from .events import SessionEventBus, Subscriber
from .ledger import Clock, LedgerStore
from .models.diffusion import DiffusionTask, Rejected
from .models.escalation import EscalationState
from .models.events import SessionEvent, SessionEventType
from .models.evidence import FrameAvailability, FrameEvidence, TranscriptEvidence
from .models.ledger import EntryKind, LedgerEntry
from .models.note import Note
from .models.snapshot import ReplayVerification, SessionBundle, SessionSnapshot
from .paths import DataPaths
from .reconciler import BackfillReconciler, NoteOutcome, ReconcileAction, ReconcileOutcome
from .replay import BlobChecker, ReplayService
from .synthesis import Synthesizer, get_synthesizer

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Everything that followed from one evidence append."""

    entry: LedgerEntry
    reconcile: ReconcileOutcome
    ladders: list[LadderOutcome] = field(default_factory=list)
    deferred: list[NoteOutcome] = field(default_factory=list)


class NoteEngine:
    """Entry point for evidence producers, UI readers and operator tooling."""

    def __init__(
        self,
        ledger: LedgerStore,
        synthesizer: Synthesizer,
        config: Optional[NoteLedgerConfig] = None,
        *,
        cost_governor: Optional[CostGovernor] = None,
        capture_client: Optional[CaptureClient] = None,
        prompt_sink: Optional[PromptSink] = None,
        events: Optional[SessionEventBus] = None,
        auto_diffuse: bool = True,
        clock: Optional[Clock] = None,
    ):
        self.config = config or NoteLedgerConfig()
        self.ledger = ledger
        self.synthesizer = synthesizer
        self.cost_governor = cost_governor or BudgetCostGovernor(self.config.session_budget)
        self.prompt_sink = prompt_sink or RecordingPromptSink()
        self.events = events or SessionEventBus()
        self.auto_diffuse = auto_diffuse
        timeout = self.config.synthesis.timeout_seconds

        self.reconciler = BackfillReconciler(
            ledger,
            synthesizer,
            self.config.reconcile,
            synthesis_timeout_seconds=timeout,
            clock=clock,
        )
        self.diffusion = DiffusionSupervisor(
            ledger,
            synthesizer,
            self.config.diffusion,
            reconcile_config=self.config.reconcile,
            cost_governor=self.cost_governor,
            synthesis_timeout_seconds=timeout,
            events=self.events,
        )
        self.escalation = EscalationCoordinator(
            self.reconciler,
            self.config.escalation,
            cost_governor=self.cost_governor,
            capture_client=capture_client or NullCaptureClient(),
            prompt_sink=self.prompt_sink,
            on_warning=self._on_warning,
            events=self.events,
        )
        self.replay_service = ReplayService(ledger, self.config.reconcile.rate_window_seconds)
        for session_id in ledger.sessions():
            self.reconciler.restore_deferred(session_id)

    @classmethod
    def from_config(
        cls,
        config: NoteLedgerConfig,
        synthesizer: Optional[Synthesizer] = None,
        **kwargs: Any,
    ) -> "NoteEngine":
        """Build an engine over the ledger in the configured data directory."""
        paths = DataPaths.from_config(config)
        for directory in paths.get_all_directories():
            directory.mkdir(parents=True, exist_ok=True)
        ledger = LedgerStore(
            paths.ledger_db,
            page_size=config.ledger.read_page_size,
            max_append_attempts=config.ledger.max_append_attempts,
        )
        synthesizer = synthesizer or get_synthesizer(
            engine=config.synthesis.engine,
            model=config.synthesis.model,
            temperature=config.synthesis.temperature,
            timeout_seconds=config.synthesis.timeout_seconds,
        )
        return cls(ledger, synthesizer, config, **kwargs)

    def close(self) -> None:
        self.diffusion.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Evidence ingestion
    # ------------------------------------------------------------------

    def ingest_transcript(
        self,
        session_id: str,
        timestamp_seconds: float,
        text: str,
        confidence: float,
    ) -> IngestResult:
        evidence = TranscriptEvidence(timestamp_seconds=timestamp_seconds, text=text, confidence=confidence)
        return self._ingest(session_id, EntryKind.EVIDENCE_TRANSCRIPT, evidence.model_dump(mode="json"))

    def ingest_frame(
        self,
        session_id: str,
        timestamp_seconds: float,
        blob_ref: str,
        availability: FrameAvailability = FrameAvailability.AVAILABLE,
    ) -> IngestResult:
        evidence = FrameEvidence(timestamp_seconds=timestamp_seconds, blob_ref=blob_ref, availability=availability)
        return self._ingest(session_id, EntryKind.EVIDENCE_FRAME, evidence.model_dump(mode="json"))

    def _ingest(self, session_id: str, kind: EntryKind, payload: dict[str, Any]) -> IngestResult:
        entry = self.ledger.append_with_retry(session_id, kind, payload)
        outcome = self.reconciler.on_evidence(entry)
        result = IngestResult(entry=entry, reconcile=outcome)
        self._publish_outcomes(session_id, outcome.results)
        if any(r.action == ReconcileAction.REVISED for r in outcome.results):
            self._publish(
                SessionEventType.BACKFILL_COMPLETE,
                session_id,
                entry.sequence,
                detail={"touched": outcome.touched_note_ids},
            )
        result.ladders = self._observe(session_id, outcome.touched_note_ids)
        result.deferred = self.flush_deferred()
        return result

    def _observe(self, session_id: str, note_ids: list[str]) -> list[LadderOutcome]:
        ladders: list[LadderOutcome] = []
        for note_id in note_ids:
            ladder = self.escalation.observe(session_id, note_id)
            if ladder is not None and not ladder.skipped:
                ladders.append(ladder)
        return ladders

    def _on_warning(self, session_id: str) -> Optional[Union[Future, Rejected]]:
        if not self.auto_diffuse:
            return None
        return self.diffusion.schedule_and_submit(session_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, session_id: str, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(session_id, callback)

    def _publish(
        self,
        event_type: SessionEventType,
        session_id: str,
        sequence: int,
        note: Optional[Note] = None,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        self.events.publish(
            SessionEvent(
                event_type=event_type,
                session_id=session_id,
                sequence=sequence,
                note=note,
                detail=detail or {},
            )
        )

    def _publish_outcomes(self, session_id: str, results: list[NoteOutcome]) -> None:
        appended = [r for r in results if r.entry is not None and r.note_id]
        if not appended:
            return
        projection = self.reconciler.project(session_id)
        for r in appended:
            note = projection.notes.get(r.note_id)
            event_type = (
                SessionEventType.NOTE_CREATED if r.action == ReconcileAction.CREATED else SessionEventType.NOTE_REVISION
            )
            self._publish(
                event_type,
                session_id,
                r.entry.sequence,
                note.model_copy(deep=True) if note is not None else None,
                detail={"reason": r.entry.payload.get("reason", "created")},
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_notes(self, session_id: str, include_merged: bool = False) -> list[Note]:
        """Current notes of a session, ordered by timestamp then note id."""
        projection = self.reconciler.project(session_id)
        notes = projection.ordered_notes() if include_merged else projection.active_notes()
        return [n.model_copy(deep=True) for n in notes]

    def get_escalations(self, session_id: str) -> list[EscalationState]:
        projection = self.reconciler.project(session_id)
        return [projection.escalations[n.note_id].model_copy(deep=True) for n in projection.ordered_notes()]

    def replay(self, session_id: str, up_to_sequence: Optional[int] = None) -> SessionSnapshot:
        return self.replay_service.replay(session_id, up_to_sequence)

    def export(self, session_id: str, blob_checker: Optional[BlobChecker] = None) -> SessionBundle:
        return self.replay_service.export(session_id, blob_checker)

    def verify(self, session_id: str) -> ReplayVerification:
        return self.replay_service.verify(session_id)

    # ------------------------------------------------------------------
    # User and operator actions
    # ------------------------------------------------------------------

    def dismiss(self, session_id: str, note_id: str) -> Optional[LedgerEntry]:
        return self.escalation.resolve_by_user(session_id, note_id, action="dismiss")

    def correct(self, session_id: str, note_id: str, text: str) -> list[LedgerEntry]:
        return self.escalation.correct_note(session_id, note_id, text)

    def schedule_diffusion(self, session_id: str, wait: bool = False) -> Union[DiffusionTask, Rejected]:
        """Schedule a diffusion pass; with wait=True it runs in the calling thread."""
        scheduled = self.diffusion.schedule(session_id)
        if isinstance(scheduled, Rejected):
            return scheduled
        if wait:
            return self.diffusion.run(scheduled)
        self.diffusion.submit(scheduled)
        return scheduled

    def flush_deferred(self, now: Optional[datetime] = None) -> list[NoteOutcome]:
        """Re-evaluate capped revisions whose rate window has opened."""
        outcomes = self.reconciler.flush_deferred(now)
        by_session: dict[str, list[NoteOutcome]] = {}
        for outcome in outcomes:
            if outcome.entry is not None:
                by_session.setdefault(outcome.entry.session_id, []).append(outcome)
        for session_id, session_outcomes in by_session.items():
            self._publish_outcomes(session_id, session_outcomes)
            self._observe(session_id, [o.note_id for o in session_outcomes if o.note_id])
        return outcomes
