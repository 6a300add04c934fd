"""Pydantic models for hash-chained ledger entries."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..hashing import canonical_json, sha256_hex


class EntryKind(str, Enum):
    """Kinds of facts recorded in a session ledger."""

    EVIDENCE_TRANSCRIPT = "evidence_transcript"
    EVIDENCE_FRAME = "evidence_frame"
    NOTE_CREATED = "note_created"
    NOTE_REVISION = "note_revision"
    CONTEXT_REQUEST = "context_request"
    RETRY_CAPTURE = "retry_capture"
    ESCALATION_RESOLVED = "escalation_resolved"

    @property
    def is_evidence(self) -> bool:
        return self in (EntryKind.EVIDENCE_TRANSCRIPT, EntryKind.EVIDENCE_FRAME)


class LedgerEntry(BaseModel):
    """Immutable, hash-chained ledger entry.

    `prev_hash` of entry N equals `entry_hash` of entry N-1 in the same
    session. Entries are appended exactly once and never rewritten.
    """

    session_id: str = Field(description="Session the entry belongs to")
    sequence: int = Field(ge=0, description="Gapless per-session sequence number")
    kind: EntryKind = Field(description="Entry kind")
    payload: dict[str, Any] = Field(default_factory=dict, description="Kind-specific data")
    payload_hash: str = Field(description="sha256 of the canonical payload JSON")
    prev_hash: str = Field(description="entry_hash of the previous entry in this session")
    entry_hash: str = Field(description="sha256 over the entry header")
    created_at: datetime = Field(description="Append timestamp (UTC)")
    references: list[int] = Field(
        default_factory=list,
        description="Prior sequences this entry logically depends on",
    )

    model_config = {"frozen": True}

    @staticmethod
    def compute_hash(
        *,
        session_id: str,
        sequence: int,
        kind: EntryKind,
        payload_hash: str,
        prev_hash: str,
        created_at: datetime,
        references: list[int],
    ) -> str:
        header = {
            "session_id": session_id,
            "sequence": sequence,
            "kind": kind.value,
            "payload_hash": payload_hash,
            "prev_hash": prev_hash,
            "created_at": created_at.isoformat(),
            "references": sorted(set(references)),
        }
        return sha256_hex(canonical_json(header))

    def recompute_hash(self) -> str:
        return self.compute_hash(
            session_id=self.session_id,
            sequence=self.sequence,
            kind=self.kind,
            payload_hash=self.payload_hash,
            prev_hash=self.prev_hash,
            created_at=self.created_at,
            references=self.references,
        )

    @property
    def note_id(self) -> str | None:
        value = self.payload.get("note_id")
        return str(value) if value is not None else None

    @property
    def timestamp_seconds(self) -> float | None:
        value = self.payload.get("timestamp_seconds")
        return float(value) if value is not None else None
