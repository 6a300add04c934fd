"""Exception taxonomy for the evidence ledger and reconciliation engine."""


class NoteLedgerError(Exception):
    """Base class for all noteledger errors."""
    pass


class ChainConflict(NoteLedgerError):
    """Raised when a concurrent append advanced the session chain tip.

    Writers recover by re-reading the tip and retrying the append.
    """

    def __init__(self, session_id: str, expected: str | None, actual: str | None):
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Chain tip for session {session_id} moved: expected {expected}, found {actual}"
        )


class SynthesisFailure(NoteLedgerError):
    """Raised when the synthesis collaborator errors or times out."""
    pass


class BudgetExhausted(NoteLedgerError):
    """Raised when the cost governor denies a reservation."""

    def __init__(self, session_id: str, cost: float):
        self.session_id = session_id
        self.cost = cost
        super().__init__(f"Cost budget exhausted for session {session_id} (requested {cost:.4f})")


class CaptureFailure(NoteLedgerError):
    """Raised by capture collaborators when a fresh capture cannot be produced."""
    pass


class EscalationUnresolved(NoteLedgerError):
    """Automation gave up on a note; the user has to act on the prompt."""

    def __init__(self, session_id: str, note_id: str, reason: str):
        self.session_id = session_id
        self.note_id = note_id
        self.reason = reason
        super().__init__(f"Escalation for note {note_id} unresolved: {reason}")


class LedgerIntegrityError(NoteLedgerError):
    """Raised when a stored chain fails verification."""
    pass
