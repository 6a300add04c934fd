"""Pydantic models for noteledger."""

from .diffusion import DiffusionTask, Rejected, RejectReason, TaskStatus
from .escalation import (
    ContextAction,
    EscalationPrompt,
    EscalationState,
    EscalationStatus,
    Resolution,
    Tier,
)
from .events import SessionEvent, SessionEventType
from .evidence import (
    CaptureResult,
    ContextWindow,
    FrameAvailability,
    FrameEvidence,
    FrameItem,
    SynthesisResult,
    TranscriptEvidence,
    TranscriptItem,
)
from .ledger import EntryKind, LedgerEntry
from .note import Note, NoteCategory, NoteStatus, RevisionReason
from .snapshot import (
    ChainReport,
    EvidenceRef,
    ReplayVerification,
    SessionBundle,
    SessionSnapshot,
)

__all__ = [
    "EntryKind",
    "LedgerEntry",
    # Evidence / synthesis
    "FrameAvailability",
    "TranscriptEvidence",
    "FrameEvidence",
    "TranscriptItem",
    "FrameItem",
    "ContextWindow",
    "CaptureResult",
    "SynthesisResult",
    # Notes
    "Note",
    "NoteCategory",
    "NoteStatus",
    "RevisionReason",
    # Escalation
    "Tier",
    "EscalationStatus",
    "EscalationState",
    "ContextAction",
    "Resolution",
    "EscalationPrompt",
    # Diffusion
    "TaskStatus",
    "RejectReason",
    "DiffusionTask",
    "Rejected",
    # Replay / export
    "SessionSnapshot",
    "SessionBundle",
    "EvidenceRef",
    "ChainReport",
    "ReplayVerification",
    # Events
    "SessionEventType",
    "SessionEvent",
]
