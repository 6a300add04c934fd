"""Diffusion task supervisor: bounded, cancellable secondary refinement passes.

A task reads the ledger up to a cursor fixed at schedule time, merges
near-duplicate notes and re-words warning-tier notes, then commits every
candidate revision in one atomic batch. Any failure aborts the task with
nothing appended; tasks are never retried.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Optional, Union

from .classifier import classify
from .collaborators import CostGovernor, UnlimitedCostGovernor
from .config import DiffusionConfig, ReconcileConfig
from .errors import BudgetExhausted, ChainConflict, NoteLedgerError
from .events import SessionEventBus
from .ledger import LedgerStore, PendingEntry
from .models.diffusion import DiffusionTask, Rejected, RejectReason, TaskStatus
from .models.escalation import Tier
from .models.events import SessionEvent, SessionEventType
from .models.ledger import EntryKind
from .models.note import Note, NoteStatus, RevisionReason
from .projection import SessionProjection
from .reconciler import is_significant, revision_payload, text_similarity
from .synthesis import Synthesizer, synthesize_with_timeout

logger = logging.getLogger(__name__)


class TaskCancelled(NoteLedgerError):
    """Raised inside a planning thread once its task has timed out."""
    pass


class StaleCursor(NoteLedgerError):
    """Notes touched by a task were revised after its cursor."""
    pass


def _merge_payload(drop: Note, keep: Note) -> dict:
    return {
        "note_id": drop.note_id,
        "text": drop.text,
        "category": drop.category.value,
        "confidence": drop.confidence,
        "timestamp_seconds": drop.timestamp_seconds,
        "window_seconds": drop.window_seconds,
        "evidence_gaps": list(drop.evidence_gaps),
        "reason": RevisionReason.DIFFUSION.value,
        "status": NoteStatus.MERGED.value,
        "merged_into": keep.note_id,
    }


class DiffusionSupervisor:
    """Schedules and runs diffusion tasks under concurrency and cost limits."""

    def __init__(
        self,
        ledger: LedgerStore,
        synthesizer: Synthesizer,
        config: Optional[DiffusionConfig] = None,
        *,
        reconcile_config: Optional[ReconcileConfig] = None,
        cost_governor: Optional[CostGovernor] = None,
        synthesis_timeout_seconds: float = 15.0,
        events: Optional[SessionEventBus] = None,
    ):
        self.ledger = ledger
        self.synthesizer = synthesizer
        self.config = config or DiffusionConfig()
        self.reconcile_config = reconcile_config or ReconcileConfig()
        self.cost_governor = cost_governor or UnlimitedCostGovernor()
        self.synthesis_timeout_seconds = synthesis_timeout_seconds
        self.events = events
        self._lock = threading.Lock()
        self._active: dict[str, set[str]] = {}
        self._tasks: dict[str, DiffusionTask] = {}
        self._pool: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, session_id: str) -> Union[DiffusionTask, Rejected]:
        """Create a task for a session, or reject it.

        The second request for a session while one is active is rejected,
        not queued.
        """
        with self._lock:
            active = self._active.setdefault(session_id, set())
            if len(active) >= self.config.max_active_per_session:
                logger.info("Diffusion for %s rejected: %d task(s) already active", session_id, len(active))
                return Rejected(session_id=session_id, reason=RejectReason.CONCURRENCY_LIMIT)
            if not self.cost_governor.reserve(session_id, self.config.schedule_cost):
                logger.info("Diffusion for %s rejected: budget exhausted", session_id)
                return Rejected(session_id=session_id, reason=RejectReason.BUDGET_EXHAUSTED)

            task = DiffusionTask(
                task_id=f"d_{uuid.uuid4().hex[:12]}",
                session_id=session_id,
                ledger_cursor=self.ledger.tip(session_id).sequence,
                cost_spent=self.config.schedule_cost,
            )
            active.add(task.task_id)
            self._tasks[task.task_id] = task

        logger.info("Scheduled diffusion %s for %s at cursor %d", task.task_id, session_id, task.ledger_cursor)
        return task

    def active_tasks(self, session_id: str) -> list[DiffusionTask]:
        with self._lock:
            return [self._tasks[t] for t in sorted(self._active.get(session_id, ()))]

    def get(self, task_id: str) -> Optional[DiffusionTask]:
        """Look up a queued or running task; finished tasks are released."""
        with self._lock:
            return self._tasks.get(task_id)

    def _release(self, task: DiffusionTask) -> None:
        with self._lock:
            active = self._active.get(task.session_id, set())
            active.discard(task.task_id)
            if not active:
                self._active.pop(task.session_id, None)
            self._tasks.pop(task.task_id, None)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, task: DiffusionTask) -> DiffusionTask:
        """Run a task to completion; returns it committed or aborted."""
        if task.status != TaskStatus.QUEUED:
            raise ValueError(f"Task {task.task_id} is {task.status.value}; tasks are never re-run")

        task.status = TaskStatus.RUNNING
        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="diffusion")
        try:
            future = executor.submit(self._plan, task, cancelled)
            try:
                items, touched = future.result(timeout=self.config.task_timeout_seconds)
            except FuturesTimeout:
                cancelled.set()
                return self._abort(task, f"timed out after {self.config.task_timeout_seconds:.1f}s")

            if not items:
                task.status = TaskStatus.COMMITTED
                logger.info("Diffusion %s found nothing to change", task.task_id)
                return task

            self._commit(task, items, touched)
            return task
        except NoteLedgerError as e:
            return self._abort(task, str(e))
        except Exception as e:
            logger.exception("Diffusion %s failed", task.task_id)
            return self._abort(task, f"{type(e).__name__}: {e}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            self._release(task)

    def _abort(self, task: DiffusionTask, reason: str) -> DiffusionTask:
        task.status = TaskStatus.ABORTED
        task.error = reason
        logger.warning("Diffusion %s for %s aborted: %s", task.task_id, task.session_id, reason)
        return task

    def _plan(self, task: DiffusionTask, cancelled: threading.Event) -> tuple[list[PendingEntry], set[str]]:
        session_id = task.session_id
        projection = SessionProjection.fold(session_id, self.ledger.read(session_id, 0, task.ledger_cursor))
        notes = projection.active_notes()
        items: list[PendingEntry] = []
        merged: set[str] = set()

        for i, a in enumerate(notes):
            if a.note_id in merged:
                continue
            for b in notes[i + 1:]:
                if b.note_id in merged:
                    continue
                if abs(b.timestamp_seconds - a.timestamp_seconds) > self.config.merge_window_seconds:
                    continue
                if text_similarity(a.text, b.text) < self.config.merge_similarity:
                    continue
                keep, drop = (a, b) if a.confidence >= b.confidence else (b, a)
                merged.add(drop.note_id)
                items.append(
                    PendingEntry(
                        kind=EntryKind.NOTE_REVISION,
                        payload=_merge_payload(drop, keep),
                        references=tuple(sorted({drop.lineage[-1], keep.lineage[-1]})),
                    )
                )
                logger.debug("Diffusion %s merges %s into %s", task.task_id, drop.note_id, keep.note_id)
                if drop is a:
                    break

        for note in notes:
            if note.note_id in merged or classify(note.confidence) != Tier.WARNING:
                continue
            if cancelled.is_set():
                raise TaskCancelled(f"task {task.task_id} cancelled")
            if not self.cost_governor.reserve(session_id, self.config.cost_per_call):
                raise BudgetExhausted(session_id, self.config.cost_per_call)
            task.cost_spent += self.config.cost_per_call

            context = projection.context_window(note.timestamp_seconds, note.window_seconds, current_text=note.text)
            result = synthesize_with_timeout(self.synthesizer, context, self.synthesis_timeout_seconds)
            if not is_significant(note, result, self.reconcile_config):
                continue
            references = set(context.evidence_sequences)
            references.add(note.lineage[-1])
            items.append(
                PendingEntry(
                    kind=EntryKind.NOTE_REVISION,
                    payload=revision_payload(note, result, context, RevisionReason.DIFFUSION),
                    references=tuple(sorted(references)),
                )
            )

        if cancelled.is_set():
            raise TaskCancelled(f"task {task.task_id} cancelled")
        touched = {str(item.payload["note_id"]) for item in items}
        return items, touched

    def _check_fresh(self, task: DiffusionTask, touched: set[str], to_sequence: int) -> None:
        for entry in self.ledger.read(task.session_id, task.ledger_cursor + 1, to_sequence):
            if entry.kind == EntryKind.NOTE_REVISION and entry.note_id in touched:
                raise StaleCursor(
                    f"note {entry.note_id} revised at #{entry.sequence} after cursor {task.ledger_cursor}"
                )

    def _commit(self, task: DiffusionTask, items: list[PendingEntry], touched: set[str]) -> None:
        for attempt in range(1, self.ledger.max_append_attempts + 1):
            tip = self.ledger.tip(task.session_id)
            self._check_fresh(task, touched, tip.sequence)
            try:
                entries = self.ledger.append_batch(task.session_id, items, expected_tip=tip.entry_hash)
                break
            except ChainConflict:
                if attempt == self.ledger.max_append_attempts:
                    raise
                logger.info("Tip moved while committing diffusion %s; re-checking", task.task_id)

        task.committed_sequences = [e.sequence for e in entries]
        task.status = TaskStatus.COMMITTED
        logger.info(
            "Diffusion %s committed %d revision(s) to %s", task.task_id, len(entries), task.session_id
        )

        if self.events is not None:
            projection = SessionProjection.fold(
                task.session_id, self.ledger.read(task.session_id, 0, entries[-1].sequence)
            )
            for entry in entries:
                note = projection.notes.get(entry.note_id or "")
                self.events.publish(
                    SessionEvent(
                        event_type=SessionEventType.NOTE_REVISION,
                        session_id=task.session_id,
                        sequence=entry.sequence,
                        note=note.model_copy(deep=True) if note is not None else None,
                        detail={"reason": RevisionReason.DIFFUSION.value, "task_id": task.task_id},
                    )
                )

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def _executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.max_workers, thread_name_prefix="diffusion-pool"
                )
            return self._pool

    def submit(self, task: DiffusionTask) -> Future:
        return self._executor().submit(self.run, task)

    def schedule_and_submit(self, session_id: str) -> Union[Future, Rejected]:
        """Non-blocking entry point used when a note enters warning."""
        scheduled = self.schedule(session_id)
        if isinstance(scheduled, Rejected):
            return scheduled
        return self.submit(scheduled)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
