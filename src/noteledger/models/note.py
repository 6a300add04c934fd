"""Pydantic models for note projections."""

from enum import Enum

from pydantic import BaseModel, Field


class NoteCategory(str, Enum):
    """Feedback categories a note can be filed under."""

    PACING = "pacing"
    AUDIO = "audio"
    VISUAL = "visual"
    EDITING = "editing"
    GENERAL = "general"
    COLOR = "color"
    GRAPHICS = "graphics"
    CONTENT = "content"
    OTHER = "other"

    @classmethod
    def coerce(cls, value: object) -> "NoteCategory":
        """Map free-form synthesizer output onto a known category."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class NoteStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"


class RevisionReason(str, Enum):
    """Why a note_revision entry was appended."""

    BACKFILL = "backfill"
    DEFERRED = "deferred"
    ESCALATION = "escalation"
    DIFFUSION = "diffusion"
    USER_CORRECTION = "user_correction"


class Note(BaseModel):
    """Current projection of a note.

    A cache over the ledger: folding the entries listed in `lineage`
    reproduces it exactly.
    """

    note_id: str = Field(description="Stable note identifier")
    session_id: str = Field(description="Owning session")
    text: str = Field(description="Synthesized note text")
    category: NoteCategory = Field(default=NoteCategory.GENERAL)
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp_seconds: float = Field(ge=0.0, description="Anchor into the video")
    window_seconds: float = Field(description="Half-width of the evidence window last used")
    lineage: list[int] = Field(
        default_factory=list,
        description="Sequences of the note_created/note_revision entries, in order",
    )
    revision_count_this_hour: int = Field(default=0)
    raw_transcript: str = Field(default="")
    evidence_gaps: list[float] = Field(default_factory=list)
    status: NoteStatus = Field(default=NoteStatus.ACTIVE)
    merged_into: str | None = Field(default=None)

    model_config = {"frozen": False}

    @property
    def is_active(self) -> bool:
        return self.status == NoteStatus.ACTIVE
