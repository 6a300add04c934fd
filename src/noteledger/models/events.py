"""Pydantic models for the per-session event stream."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .note import Note


class SessionEventType(str, Enum):
    NOTE_CREATED = "note_created"
    NOTE_REVISION = "note_revision"
    BACKFILL_COMPLETE = "backfill_complete"
    ESCALATION_RAISED = "escalation_raised"
    ESCALATION_RESOLVED = "escalation_resolved"


class SessionEvent(BaseModel):
    """Event pushed to UI/extension subscribers of a session."""

    event_type: SessionEventType
    session_id: str
    sequence: int = Field(description="Ledger sequence the event refers to")
    note: Note | None = Field(default=None, description="Note snapshot after the change")
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
