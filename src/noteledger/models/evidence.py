"""Pydantic models for evidence payloads and synthesis I/O."""

from enum import Enum

from pydantic import BaseModel, Field

from .note import NoteCategory


class FrameAvailability(str, Enum):
    """Whether the captured frame blob can still be fetched."""

    AVAILABLE = "available"
    EXPIRED = "expired"
    PENDING = "pending"


class TranscriptEvidence(BaseModel):
    """Transcript fragment produced by the transcription/VAD pipeline."""

    timestamp_seconds: float = Field(ge=0.0, description="Anchor into the video")
    text: str = Field(description="Transcribed speech")
    confidence: float = Field(ge=0.0, le=1.0, description="Transcription confidence")

    model_config = {"frozen": True}


class FrameEvidence(BaseModel):
    """Frame capture produced by the frame-capture pipeline."""

    timestamp_seconds: float = Field(ge=0.0, description="Anchor into the video")
    blob_ref: str = Field(description="Opaque reference to the stored frame blob")
    availability: FrameAvailability = Field(default=FrameAvailability.AVAILABLE)

    model_config = {"frozen": True}


class TranscriptItem(BaseModel):
    sequence: int
    timestamp_seconds: float
    text: str
    confidence: float

    model_config = {"frozen": True}


class FrameItem(BaseModel):
    sequence: int
    timestamp_seconds: float
    blob_ref: str
    availability: FrameAvailability

    model_config = {"frozen": True}


class ContextWindow(BaseModel):
    """Evidence handed to the synthesis collaborator.

    Built from a fixed ledger prefix (`cursor`), so the same window always
    carries the same evidence.
    """

    session_id: str
    anchor_seconds: float = Field(description="Timestamp the note is anchored to")
    window_seconds: float = Field(description="Half-width of the window around the anchor")
    cursor: int = Field(description="Highest ledger sequence the window was read from")
    transcripts: list[TranscriptItem] = Field(default_factory=list)
    frames: list[FrameItem] = Field(default_factory=list)
    current_text: str | None = Field(default=None, description="Current note text, if any")

    model_config = {"frozen": True}

    @property
    def start_seconds(self) -> float:
        return max(0.0, self.anchor_seconds - self.window_seconds)

    @property
    def end_seconds(self) -> float:
        return self.anchor_seconds + self.window_seconds

    @property
    def evidence_sequences(self) -> list[int]:
        return sorted({t.sequence for t in self.transcripts} | {f.sequence for f in self.frames})

    @property
    def raw_transcript(self) -> str:
        return " ".join(t.text.strip() for t in self.transcripts if t.text.strip())


class SynthesisResult(BaseModel):
    """Output of the synthesis collaborator."""

    text: str
    category: NoteCategory = Field(default=NoteCategory.GENERAL)
    confidence: float = Field(ge=0.0, le=1.0)
    evidence_gaps: list[float] = Field(
        default_factory=list,
        description="Timestamps where the synthesizer lacked evidence",
    )

    model_config = {"frozen": True}


class CaptureResult(BaseModel):
    """Fresh evidence returned by the capture collaborator."""

    transcripts: list[TranscriptEvidence] = Field(default_factory=list)
    frames: list[FrameEvidence] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def is_empty(self) -> bool:
        return not self.transcripts and not self.frames
