"""Escalation coordinator: drives low-confidence notes toward resolution.

Per-note state lives in the ledger (context_request, retry_capture and
escalation_resolved entries folded by the projection). The coordinator only
decides which ladder step to take next and records each step before acting
on it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .classifier import is_critical
from .collaborators import CaptureClient, CostGovernor, NullCaptureClient, PromptSink, UnlimitedCostGovernor
from .config import EscalationConfig
from .errors import BudgetExhausted, CaptureFailure, ChainConflict, EscalationUnresolved
from .events import SessionEventBus
from .ledger import PendingEntry
from .models.escalation import ContextAction, EscalationPrompt, EscalationStatus, Resolution
from .models.evidence import CaptureResult
from .models.events import SessionEvent, SessionEventType
from .models.ledger import EntryKind, LedgerEntry
from .models.note import Note, RevisionReason
from .projection import SessionProjection
from .reconciler import BackfillReconciler, ReconcileAction

logger = logging.getLogger(__name__)

WarningHook = Callable[[str], Any]


@dataclass
class LadderOutcome:
    """What one pass over the escalation ladder did for a note."""

    session_id: str
    note_id: str
    steps: list[str] = field(default_factory=list)
    revisions: list[LedgerEntry] = field(default_factory=list)
    resolved: bool = False
    awaiting_user: bool = False
    skipped: bool = False
    budget_exhausted: bool = False
    errors: list[str] = field(default_factory=list)


class EscalationCoordinator:
    """Runs the expand-window / capture / user-prompt ladder for critical notes."""

    def __init__(
        self,
        reconciler: BackfillReconciler,
        config: Optional[EscalationConfig] = None,
        *,
        cost_governor: Optional[CostGovernor] = None,
        capture_client: Optional[CaptureClient] = None,
        prompt_sink: Optional[PromptSink] = None,
        on_warning: Optional[WarningHook] = None,
        events: Optional[SessionEventBus] = None,
    ):
        """Initialize the coordinator.

        Args:
            reconciler: Reconciler used for re-synthesis and ledger access
            config: Ladder settings
            cost_governor: Consulted before a capture request
            capture_client: Fresh audio/frame capture pipeline
            prompt_sink: Where unresolved notes are surfaced to the user
            on_warning: Called with the session id when a note enters warning
            events: Optional event bus for UI subscribers
        """
        self.reconciler = reconciler
        self.ledger = reconciler.ledger
        self.config = config or EscalationConfig()
        self.cost_governor = cost_governor or UnlimitedCostGovernor()
        self.capture_client = capture_client or NullCaptureClient()
        self.prompt_sink = prompt_sink
        self.on_warning = on_warning
        self.events = events
        self._note_locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()
        self._warnings_seen: set[tuple[str, str, int]] = set()

    def _lock_for(self, session_id: str, note_id: str) -> threading.Lock:
        with self._guard:
            return self._note_locks.setdefault((session_id, note_id), threading.Lock())

    def _publish(
        self,
        event_type: SessionEventType,
        session_id: str,
        sequence: int,
        note: Optional[Note] = None,
        **detail: Any,
    ) -> None:
        if self.events is None:
            return
        self.events.publish(
            SessionEvent(
                event_type=event_type,
                session_id=session_id,
                sequence=sequence,
                note=note.model_copy(deep=True) if note is not None else None,
                detail=detail,
            )
        )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def observe(self, session_id: str, note_id: str) -> Optional[LadderOutcome]:
        """React to the current escalation status of a note.

        Returns:
            LadderOutcome if the ladder ran (or was skipped), else None
        """
        projection = self.reconciler.project(session_id)
        state = projection.escalations.get(note_id)
        note = projection.notes.get(note_id)
        if state is None or note is None or not note.is_active:
            return None

        status = state.status
        if status == EscalationStatus.WARNING:
            key = (session_id, note_id, state.since_sequence)
            with self._guard:
                first_time = key not in self._warnings_seen
                self._warnings_seen.add(key)
            if first_time and self.on_warning is not None:
                logger.info("Note %s entered warning; scheduling diffusion for %s", note_id, session_id)
                self.on_warning(session_id)
            return None

        if status == EscalationStatus.CRITICAL and not state.awaiting_user:
            return self.run_ladder(session_id, note_id)
        return None

    def run_ladder(self, session_id: str, note_id: str) -> LadderOutcome:
        """Run the ladder for one note; a concurrent run for the same note is skipped."""
        lock = self._lock_for(session_id, note_id)
        if not lock.acquire(blocking=False):
            logger.debug("Ladder already running for note %s", note_id)
            return LadderOutcome(session_id=session_id, note_id=note_id, skipped=True)
        try:
            return self._run_ladder(session_id, note_id)
        finally:
            lock.release()

    def _run_ladder(self, session_id: str, note_id: str) -> LadderOutcome:
        outcome = LadderOutcome(session_id=session_id, note_id=note_id)
        projection = self.reconciler.project(session_id)
        state = projection.escalations.get(note_id)
        note = projection.notes.get(note_id)
        if (
            state is None
            or note is None
            or state.status != EscalationStatus.CRITICAL
            or state.awaiting_user
        ):
            outcome.skipped = True
            return outcome

        self._publish(
            SessionEventType.ESCALATION_RAISED,
            session_id,
            projection.last_sequence,
            note,
            tier=state.tier.value,
        )
        logger.info("Escalating note %s in %s (confidence %.2f)", note_id, session_id, note.confidence)

        window = note.window_seconds + self.config.window_increment_seconds
        if self._expand_window(projection, note_id, window, outcome):
            return outcome

        reason = "confidence still below threshold after widening the window"
        try:
            if self._capture(projection, note_id, window, outcome):
                return outcome
        except BudgetExhausted as e:
            logger.info("Skipping capture for note %s: %s", note_id, e)
            outcome.budget_exhausted = True
            outcome.errors.append(str(e))
            reason = "capture budget exhausted"
        except EscalationUnresolved as e:
            logger.warning("%s", e)
            outcome.errors.append(str(e))
            reason = e.reason

        self._prompt_user(projection, note_id, window, reason, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Ladder steps
    # ------------------------------------------------------------------

    def _context_request(
        self,
        projection: SessionProjection,
        note: Note,
        action: ContextAction,
        window_seconds: float,
    ) -> LedgerEntry:
        entry = self.ledger.append_with_retry(
            projection.session_id,
            EntryKind.CONTEXT_REQUEST,
            {
                "note_id": note.note_id,
                "action": action.value,
                "timestamp_seconds": note.timestamp_seconds,
                "window_seconds": window_seconds,
            },
            references=[note.lineage[-1]],
        )
        self.reconciler.advance(projection, entry.sequence)
        return entry

    def _expand_window(
        self,
        projection: SessionProjection,
        note_id: str,
        window_seconds: float,
        outcome: LadderOutcome,
    ) -> bool:
        note = projection.notes[note_id]
        self._context_request(projection, note, ContextAction.EXPAND_WINDOW, window_seconds)
        outcome.steps.append(ContextAction.EXPAND_WINDOW.value)
        return self._resynthesize(projection, note_id, window_seconds, outcome)

    def _capture(
        self,
        projection: SessionProjection,
        note_id: str,
        window_seconds: float,
        outcome: LadderOutcome,
    ) -> bool:
        session_id = projection.session_id
        note = projection.notes[note_id]
        if not self.cost_governor.reserve(session_id, self.config.capture_cost):
            raise BudgetExhausted(session_id, self.config.capture_cost)

        self._context_request(projection, note, ContextAction.CAPTURE, window_seconds)
        outcome.steps.append(ContextAction.CAPTURE.value)

        attempt = 0
        while True:
            try:
                captured = self._request_capture(session_id, note)
                break
            except CaptureFailure as e:
                if attempt >= self.config.capture_retries:
                    raise EscalationUnresolved(session_id, note_id, f"capture failed: {e}") from e
                attempt += 1
                entry = self.ledger.append_with_retry(
                    session_id,
                    EntryKind.RETRY_CAPTURE,
                    {
                        "note_id": note_id,
                        "timestamp_seconds": note.timestamp_seconds,
                        "attempt": attempt,
                        "error": str(e),
                    },
                    references=[note.lineage[-1]],
                )
                self.reconciler.advance(projection, entry.sequence)
                outcome.steps.append(EntryKind.RETRY_CAPTURE.value)
                logger.info("Capture for note %s failed (%s); retry %d", note_id, e, attempt)

        if captured.is_empty:
            raise EscalationUnresolved(session_id, note_id, "capture returned no evidence")

        last = None
        for t in captured.transcripts:
            last = self.ledger.append_with_retry(
                session_id, EntryKind.EVIDENCE_TRANSCRIPT, t.model_dump(mode="json")
            )
        for f in captured.frames:
            last = self.ledger.append_with_retry(session_id, EntryKind.EVIDENCE_FRAME, f.model_dump(mode="json"))
        if last is not None:
            self.reconciler.advance(projection, last.sequence)

        return self._resynthesize(projection, note_id, window_seconds, outcome)

    def _request_capture(self, session_id: str, note: Note) -> CaptureResult:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture")
        future = executor.submit(
            self.capture_client.request_capture, session_id, note.note_id, note.timestamp_seconds
        )
        try:
            return future.result(timeout=self.config.capture_timeout_seconds)
        except FuturesTimeout as e:
            raise CaptureFailure(f"capture timed out after {self.config.capture_timeout_seconds:.1f}s") from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _resynthesize(
        self,
        projection: SessionProjection,
        note_id: str,
        window_seconds: float,
        outcome: LadderOutcome,
    ) -> bool:
        note = projection.notes[note_id]
        result = self.reconciler.revise(
            projection,
            note,
            reason=RevisionReason.ESCALATION,
            window_seconds=window_seconds,
            enforce_cap=False,
        )
        if result.action == ReconcileAction.FAILED and result.error:
            outcome.errors.append(result.error)
        if result.entry is not None:
            outcome.revisions.append(result.entry)
            self._publish(SessionEventType.NOTE_REVISION, projection.session_id, result.entry.sequence, note)

        note = projection.notes[note_id]
        if is_critical(note.confidence):
            return False
        self._mark_recovered(projection, note, outcome)
        return True

    def _mark_recovered(self, projection: SessionProjection, note: Note, outcome: LadderOutcome) -> None:
        entry = self.ledger.append_with_retry(
            projection.session_id,
            EntryKind.ESCALATION_RESOLVED,
            {"note_id": note.note_id, "resolution": Resolution.CONFIDENCE_RECOVERED.value},
            references=[note.lineage[-1]],
        )
        self.reconciler.advance(projection, entry.sequence)
        outcome.resolved = True
        logger.info("Escalation for note %s resolved at confidence %.2f", note.note_id, note.confidence)
        self._publish(
            SessionEventType.ESCALATION_RESOLVED,
            projection.session_id,
            entry.sequence,
            note,
            resolution=Resolution.CONFIDENCE_RECOVERED.value,
        )

    def _prompt_user(
        self,
        projection: SessionProjection,
        note_id: str,
        window_seconds: float,
        reason: str,
        outcome: LadderOutcome,
    ) -> None:
        note = projection.notes[note_id]
        entry = self._context_request(projection, note, ContextAction.USER_PROMPT, window_seconds)
        outcome.steps.append(ContextAction.USER_PROMPT.value)
        outcome.awaiting_user = True

        prompt = EscalationPrompt(
            session_id=projection.session_id,
            note_id=note_id,
            sequence=entry.sequence,
            timestamp_seconds=note.timestamp_seconds,
            text=note.text,
            confidence=note.confidence,
            reason=reason,
        )
        if self.prompt_sink is not None:
            try:
                self.prompt_sink.surface(prompt)
            except Exception as e:
                # The user_prompt entry is already recorded; the note stays awaiting_user
                logger.exception("Prompt sink failed for note %s", note_id)
                outcome.errors.append(f"prompt sink failed: {e}")
        self._publish(
            SessionEventType.ESCALATION_RAISED,
            projection.session_id,
            entry.sequence,
            note,
            awaiting_user=True,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def resolve_by_user(
        self,
        session_id: str,
        note_id: str,
        action: str = "dismiss",
    ) -> Optional[LedgerEntry]:
        """Resolve an escalation on behalf of the user.

        Returns:
            The escalation_resolved entry, or None if already resolved

        Raises:
            KeyError: If the note does not exist
            ValueError: If the action is not supported
        """
        if action != "dismiss":
            raise ValueError(f"Unsupported user action: {action}")

        with self._lock_for(session_id, note_id):
            projection = self.reconciler.project(session_id)
            state = projection.escalations.get(note_id)
            note = projection.notes.get(note_id)
            if state is None or note is None:
                raise KeyError(f"Unknown note {note_id} in session {session_id}")
            if state.resolved:
                return None

            entry = self.ledger.append_with_retry(
                session_id,
                EntryKind.ESCALATION_RESOLVED,
                {"note_id": note_id, "resolution": Resolution.DISMISSED.value},
                references=[note.lineage[-1]],
            )
        logger.info("Note %s dismissed by user", note_id)
        self._publish(
            SessionEventType.ESCALATION_RESOLVED,
            session_id,
            entry.sequence,
            note,
            resolution=Resolution.DISMISSED.value,
        )
        return entry

    def correct_note(self, session_id: str, note_id: str, text: str) -> list[LedgerEntry]:
        """Replace a note's text with a user correction.

        An open escalation is resolved as user_corrected in the same batch,
        ahead of the revision, so the fold does not read the correction as
        a confidence recovery.
        """
        with self._lock_for(session_id, note_id):
            for attempt in range(1, self.ledger.max_append_attempts + 1):
                projection = self.reconciler.project(session_id)
                state = projection.escalations.get(note_id)
                note = projection.notes.get(note_id)
                if state is None or note is None:
                    raise KeyError(f"Unknown note {note_id} in session {session_id}")

                refs = (note.lineage[-1],)
                items: list[PendingEntry] = []
                if not state.resolved:
                    items.append(
                        PendingEntry(
                            kind=EntryKind.ESCALATION_RESOLVED,
                            payload={"note_id": note_id, "resolution": Resolution.USER_CORRECTED.value},
                            references=refs,
                        )
                    )
                items.append(
                    PendingEntry(
                        kind=EntryKind.NOTE_REVISION,
                        payload={
                            "note_id": note_id,
                            "text": text,
                            "category": note.category.value,
                            "confidence": 1.0,
                            "timestamp_seconds": note.timestamp_seconds,
                            "window_seconds": note.window_seconds,
                            "raw_transcript": note.raw_transcript,
                            "evidence_gaps": [],
                            "reason": RevisionReason.USER_CORRECTION.value,
                        },
                        references=refs,
                    )
                )
                try:
                    entries = self.ledger.append_batch(session_id, items, expected_tip=projection.tip_hash)
                    break
                except ChainConflict:
                    if attempt == self.ledger.max_append_attempts:
                        raise
                    logger.info("Tip moved while correcting note %s; re-reading", note_id)

        self.reconciler.advance(projection, entries[-1].sequence)
        corrected = projection.notes[note_id]
        if len(entries) == 2:
            self._publish(
                SessionEventType.ESCALATION_RESOLVED,
                session_id,
                entries[0].sequence,
                corrected,
                resolution=Resolution.USER_CORRECTED.value,
            )
        self._publish(SessionEventType.NOTE_REVISION, session_id, entries[-1].sequence, corrected)
        return entries
