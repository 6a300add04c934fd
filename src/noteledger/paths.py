"""Path management for the noteledger data directory."""

from pathlib import Path

from .config import NoteLedgerConfig


def bundle_filename(session_id: str, tip_sequence: int) -> str:
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in session_id)
    return f"{safe}_{tip_sequence:06d}.json"


class DataPaths:
    """Manages paths within a noteledger data directory."""

    def __init__(self, data_root: Path):
        """Initialize data paths from root directory.

        Args:
            data_root: Root directory holding the ledger database and exports
        """
        self.root = data_root

        self.exports = data_root / "exports"
        self.ledger_db = data_root / "ledger.sqlite"

    @classmethod
    def from_config(cls, config: NoteLedgerConfig) -> "DataPaths":
        """Create DataPaths from a NoteLedgerConfig."""
        return cls(config.data_dir)

    def get_all_directories(self) -> list[Path]:
        """Get list of all directories that should exist in the data root."""
        return [self.root, self.exports]
