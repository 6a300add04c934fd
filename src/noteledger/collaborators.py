"""Interfaces and simple implementations of external collaborators.

The engine talks to the cost governor, the capture pipeline and the
user-facing prompt surface only through these classes.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from rich.console import Console

from .errors import CaptureFailure
from .models.escalation import EscalationPrompt
from .models.evidence import CaptureResult

logger = logging.getLogger(__name__)


class CostGovernor(ABC):
    """External cost governor consulted before spending synthesis budget."""

    @abstractmethod
    def reserve(self, session_id: str, estimated_cost: float) -> bool:
        """Reserve budget; returns False (Denied) when it is exhausted."""
        raise NotImplementedError


class UnlimitedCostGovernor(CostGovernor):
    """Governor that allows everything."""

    def reserve(self, session_id: str, estimated_cost: float) -> bool:
        return True


class BudgetCostGovernor(CostGovernor):
    """Fixed per-session budget, safe to share between worker threads."""

    def __init__(self, budget_per_session: float):
        self.budget_per_session = budget_per_session
        self._spent: dict[str, float] = {}
        self._lock = threading.Lock()

    def reserve(self, session_id: str, estimated_cost: float) -> bool:
        with self._lock:
            spent = self._spent.get(session_id, 0.0)
            if spent + estimated_cost > self.budget_per_session + 1e-9:
                logger.info(
                    "Cost governor denied %.4f for session %s (spent %.4f of %.4f)",
                    estimated_cost,
                    session_id,
                    spent,
                    self.budget_per_session,
                )
                return False
            self._spent[session_id] = spent + estimated_cost
            return True


class CaptureClient(ABC):
    """Audio/frame capture pipeline asked for fresh evidence during escalation."""

    @abstractmethod
    def request_capture(self, session_id: str, note_id: str, timestamp_seconds: float) -> CaptureResult:
        """Request a fresh capture at a video timestamp.

        Raises:
            CaptureFailure: If no capture can be produced
        """
        raise NotImplementedError


class NullCaptureClient(CaptureClient):
    """Used when no capture pipeline is attached."""

    def request_capture(self, session_id: str, note_id: str, timestamp_seconds: float) -> CaptureResult:
        raise CaptureFailure("no capture pipeline attached")


class PromptSink(ABC):
    """User-facing surface for unresolved escalations."""

    @abstractmethod
    def surface(self, prompt: EscalationPrompt) -> None:
        raise NotImplementedError


class RecordingPromptSink(PromptSink):
    """Keeps surfaced prompts in memory (inspector views, tests)."""

    def __init__(self) -> None:
        self.prompts: list[EscalationPrompt] = []

    def surface(self, prompt: EscalationPrompt) -> None:
        self.prompts.append(prompt)


class ConsolePromptSink(PromptSink):
    """Prints prompts to the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def surface(self, prompt: EscalationPrompt) -> None:
        self.console.print(
            f"[yellow]Needs review[/yellow] note {prompt.note_id} at {prompt.timestamp_seconds:.1f}s "
            f"(confidence {prompt.confidence:.2f}): {prompt.text[:80]}"
        )
