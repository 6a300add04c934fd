"""Pydantic models for the per-note escalation state machine."""

from enum import Enum

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Confidence tier produced by the classifier."""

    STABLE = "stable"
    WARNING = "warning"
    CRITICAL = "critical"


class EscalationStatus(str, Enum):
    """States of the escalation machine; RESOLVED is terminal."""

    STABLE = "stable"
    WARNING = "warning"
    CRITICAL = "critical"
    RESOLVED = "resolved"


class ContextAction(str, Enum):
    """Escalation ladder steps recorded as context_request entries."""

    EXPAND_WINDOW = "expand_window"
    CAPTURE = "capture"
    USER_PROMPT = "user_prompt"


class Resolution(str, Enum):
    CONFIDENCE_RECOVERED = "confidence_recovered"
    DISMISSED = "dismissed"
    USER_CORRECTED = "user_corrected"


class EscalationState(BaseModel):
    """Escalation machine instance for one note."""

    note_id: str
    tier: Tier = Field(description="Last tier observed before the machine settled")
    attempts: int = Field(default=0, description="Escalation actions taken")
    last_action: str | None = Field(default=None)
    resolved: bool = Field(default=False)
    resolution: Resolution | None = Field(default=None)
    awaiting_user: bool = Field(default=False, description="A user prompt is outstanding")
    since_sequence: int = Field(description="Sequence at which the current status was entered")

    model_config = {"frozen": False}

    @property
    def status(self) -> EscalationStatus:
        if self.resolved:
            return EscalationStatus.RESOLVED
        return EscalationStatus(self.tier.value)


class EscalationPrompt(BaseModel):
    """User-facing prompt surfaced when automation cannot resolve a note."""

    session_id: str
    note_id: str
    sequence: int = Field(description="Sequence of the user_prompt context_request")
    timestamp_seconds: float
    text: str
    confidence: float
    reason: str

    model_config = {"frozen": True}
