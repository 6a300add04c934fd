"""Tests for diffusion scheduling, commit and abort paths."""

import threading

import pytest

from noteledger.collaborators import BudgetCostGovernor
from noteledger.config import DiffusionConfig
from noteledger.diffusion import DiffusionSupervisor
from noteledger.errors import SynthesisFailure
from noteledger.models.diffusion import DiffusionTask, Rejected, RejectReason, TaskStatus
from noteledger.models.escalation import EscalationStatus
from noteledger.models.ledger import EntryKind
from noteledger.models.note import NoteStatus, RevisionReason
from noteledger.projection import SessionProjection
from noteledger.synthesis import FakeSynthesizer


def _seed_note(ledger, note_id, confidence, t=10.0, text="Turn left here"):
    evidence = ledger.append(
        "s1", EntryKind.EVIDENCE_TRANSCRIPT, {"timestamp_seconds": t, "text": text.lower(), "confidence": 0.9}
    )
    return ledger.append(
        "s1",
        EntryKind.NOTE_CREATED,
        {
            "note_id": note_id,
            "text": text,
            "category": "visual",
            "confidence": confidence,
            "timestamp_seconds": t,
            "window_seconds": 30.0,
            "raw_transcript": text.lower(),
            "evidence_gaps": [],
        },
        references=[evidence.sequence],
    )


def _fold(ledger):
    return SessionProjection.fold("s1", ledger.read("s1"))


def test_second_schedule_for_session_is_rejected(ledger):
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer())

    first = supervisor.schedule("s1")
    second = supervisor.schedule("s1")

    assert isinstance(first, DiffusionTask)
    assert second == Rejected(session_id="s1", reason=RejectReason.CONCURRENCY_LIMIT)
    # Other sessions are independent
    assert isinstance(supervisor.schedule("s2"), DiffusionTask)

    supervisor.run(first)
    assert supervisor.active_tasks("s1") == []
    assert isinstance(supervisor.schedule("s1"), DiffusionTask)


def test_schedule_rejected_when_budget_denied(ledger):
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer(), cost_governor=BudgetCostGovernor(0.1))

    result = supervisor.schedule("s1")

    assert isinstance(result, Rejected)
    assert result.reason == RejectReason.BUDGET_EXHAUSTED


def test_cursor_is_fixed_at_schedule_time(ledger):
    _seed_note(ledger, "n1", 0.9)
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer())

    task = supervisor.schedule("s1")

    assert task.ledger_cursor == 1
    assert task.status == TaskStatus.QUEUED
    assert task.cost_spent == supervisor.config.schedule_cost


def test_merges_near_duplicate_notes(ledger):
    _seed_note(ledger, "n1", 0.9, t=10.0, text="Turn left here")
    _seed_note(ledger, "n2", 0.85, t=12.0, text="Turn left here.")
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer())

    task = supervisor.run(supervisor.schedule("s1"))

    assert task.status == TaskStatus.COMMITTED
    assert task.committed_sequences == [4]
    merge = ledger.get("s1", 4)
    assert merge.payload["status"] == NoteStatus.MERGED.value
    assert merge.payload["merged_into"] == "n1"
    assert merge.references == [1, 3]

    projection = _fold(ledger)
    assert projection.notes["n2"].status == NoteStatus.MERGED
    assert [n.note_id for n in projection.active_notes()] == ["n1"]


def test_rewords_warning_tier_notes(ledger, scripted):
    _seed_note(ledger, "n1", 0.7)
    supervisor = DiffusionSupervisor(ledger, scripted(0.85))

    task = supervisor.run(supervisor.schedule("s1"))

    assert task.status == TaskStatus.COMMITTED
    revision = ledger.get("s1", task.committed_sequences[0])
    assert revision.payload["reason"] == RevisionReason.DIFFUSION.value
    assert revision.references == [0, 1]
    projection = _fold(ledger)
    assert projection.notes["n1"].confidence == 0.85
    assert projection.escalations["n1"].status == EscalationStatus.RESOLVED
    assert task.cost_spent == supervisor.config.schedule_cost + supervisor.config.cost_per_call


def test_nothing_to_change_commits_empty(ledger):
    _seed_note(ledger, "n1", 0.9)
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer())

    task = supervisor.run(supervisor.schedule("s1"))

    assert task.status == TaskStatus.COMMITTED
    assert task.committed_sequences == []
    assert ledger.tip("s1").sequence == 1


def test_timeout_aborts_without_appending(ledger):
    _seed_note(ledger, "n1", 0.7)
    release = threading.Event()

    class SlowSynthesizer(FakeSynthesizer):
        def synthesize(self, context):
            release.wait(2.0)
            return super().synthesize(context)

    supervisor = DiffusionSupervisor(ledger, SlowSynthesizer(), DiffusionConfig(task_timeout_seconds=0.2))
    try:
        task = supervisor.run(supervisor.schedule("s1"))
    finally:
        release.set()

    assert task.status == TaskStatus.ABORTED
    assert "timed out" in task.error
    assert ledger.tip("s1").sequence == 1


def test_stale_cursor_aborts(ledger, scripted):
    _seed_note(ledger, "n1", 0.7)
    supervisor = DiffusionSupervisor(ledger, scripted(0.85))
    task = supervisor.schedule("s1")

    # The note is revised after the task fixed its cursor
    ledger.append(
        "s1",
        EntryKind.NOTE_REVISION,
        {"note_id": "n1", "text": "Turn left at the sign", "confidence": 0.75, "reason": "backfill"},
        references=[1],
    )
    task = supervisor.run(task)

    assert task.status == TaskStatus.ABORTED
    assert "after cursor" in task.error
    assert ledger.tip("s1").sequence == 2


def test_budget_denied_mid_task_aborts(ledger, scripted):
    _seed_note(ledger, "n1", 0.7)
    supervisor = DiffusionSupervisor(ledger, scripted(0.85), cost_governor=BudgetCostGovernor(0.5))

    task = supervisor.run(supervisor.schedule("s1"))

    assert task.status == TaskStatus.ABORTED
    assert "budget exhausted" in task.error.lower()
    assert ledger.tip("s1").sequence == 1


def test_synthesis_failure_aborts(ledger, scripted):
    _seed_note(ledger, "n1", 0.7)
    supervisor = DiffusionSupervisor(ledger, scripted(SynthesisFailure("model unavailable")))

    task = supervisor.run(supervisor.schedule("s1"))

    assert task.status == TaskStatus.ABORTED
    assert "model unavailable" in task.error


def test_tasks_are_never_rerun(ledger):
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer())
    task = supervisor.run(supervisor.schedule("s1"))

    with pytest.raises(ValueError):
        supervisor.run(task)


def test_schedule_and_submit_runs_in_background(ledger, scripted):
    _seed_note(ledger, "n1", 0.7)
    supervisor = DiffusionSupervisor(ledger, scripted(0.85))
    try:
        future = supervisor.schedule_and_submit("s1")
        task = future.result(timeout=5)
    finally:
        supervisor.shutdown()

    assert task.status == TaskStatus.COMMITTED
    assert supervisor.get(task.task_id) is None


def test_finished_tasks_are_released(ledger):
    supervisor = DiffusionSupervisor(ledger, FakeSynthesizer())
    running = supervisor.schedule("s2")

    finished = [supervisor.run(supervisor.schedule("s1")) for _ in range(20)]

    assert {t.status for t in finished} == {TaskStatus.COMMITTED}
    assert all(supervisor.get(t.task_id) is None for t in finished)
    assert supervisor.get(running.task_id) is running
    assert supervisor.active_tasks("s1") == []
    assert supervisor._tasks == {running.task_id: running}
