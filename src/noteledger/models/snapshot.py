"""Pydantic models for replay snapshots, export bundles and chain reports."""

from pydantic import BaseModel, Field

from ..hashing import canonical_json, sha256_hex
from .escalation import EscalationState
from .evidence import FrameAvailability
from .ledger import EntryKind
from .note import Note


class SessionSnapshot(BaseModel):
    """Session state at a point in ledger history."""

    session_id: str
    up_to_sequence: int = Field(description="Last sequence folded (-1 for an empty prefix)")
    tip_hash: str = Field(description="entry_hash of the last folded entry")
    notes: list[Note] = Field(default_factory=list)
    escalations: list[EscalationState] = Field(default_factory=list)
    evidence_count: int = Field(default=0)

    model_config = {"frozen": True}

    def canonical_json(self) -> str:
        return canonical_json(self.model_dump(mode="json"))

    @property
    def snapshot_hash(self) -> str:
        return sha256_hex(self.canonical_json())


class EvidenceRef(BaseModel):
    sequence: int
    kind: EntryKind
    timestamp_seconds: float
    blob_ref: str | None = None
    availability: FrameAvailability | None = None
    blob_present: bool = Field(description="Underlying evidence can still be retrieved")

    model_config = {"frozen": True}


class SessionBundle(BaseModel):
    """Hash-stable export of a full session replay."""

    session_id: str
    tip_sequence: int
    tip_hash: str
    chain_valid: bool
    snapshot: SessionSnapshot
    evidence: list[EvidenceRef] = Field(default_factory=list)
    bundle_hash: str = Field(default="")

    model_config = {"frozen": True}

    def content_hash(self) -> str:
        return sha256_hex(canonical_json(self.model_dump(mode="json", exclude={"bundle_hash"})))


class ChainReport(BaseModel):
    session_id: str
    entries: int
    valid: bool
    problems: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class ReplayVerification(BaseModel):
    session_id: str
    chain: ChainReport
    deterministic: bool
    lineage_consistent: bool
    snapshot_hash: str
    problems: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.chain.valid and self.deterministic and self.lineage_consistent
