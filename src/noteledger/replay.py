"""Replay, export and verification of session ledgers.

Replays are pure folds from sequence 0: the same ledger prefix always
produces a byte-identical snapshot.
"""

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from .errors import LedgerIntegrityError
from .ledger import LedgerStore
from .models.evidence import FrameAvailability
from .models.ledger import EntryKind
from .models.note import Note
from .models.snapshot import EvidenceRef, ReplayVerification, SessionBundle, SessionSnapshot
from .paths import bundle_filename
from .projection import SessionProjection

logger = logging.getLogger(__name__)

BlobChecker = Callable[[str], bool]


def _note_fields(note: Note) -> dict:
    return note.model_dump(mode="json", exclude={"revision_count_this_hour"})


class ReplayService:
    """Rebuilds session state from the ledger."""

    def __init__(self, ledger: LedgerStore, rate_window_seconds: float = 3600.0):
        self.ledger = ledger
        self.rate_window_seconds = rate_window_seconds

    def _fold(self, session_id: str, up_to_sequence: Optional[int] = None) -> SessionProjection:
        return SessionProjection.fold(session_id, self.ledger.read(session_id, 0, up_to_sequence))

    def replay(self, session_id: str, up_to_sequence: Optional[int] = None) -> SessionSnapshot:
        """Fold the ledger from sequence 0 up to (and including) up_to_sequence.

        Args:
            session_id: Session to replay
            up_to_sequence: Last sequence to fold; defaults to the current tip

        Returns:
            SessionSnapshot of the notes and escalation states at that point
        """
        return self._fold(session_id, up_to_sequence).snapshot(self.rate_window_seconds)

    def export(self, session_id: str, blob_checker: Optional[BlobChecker] = None) -> SessionBundle:
        """Build a hash-stable bundle of the full replay plus evidence availability.

        Args:
            session_id: Session to export
            blob_checker: Optional callable telling whether a frame blob still exists

        Returns:
            SessionBundle with bundle_hash filled in
        """
        tip = self.ledger.tip(session_id)
        entries = list(self.ledger.read(session_id, 0, tip.sequence))
        projection = SessionProjection.fold(session_id, entries)
        chain = self.ledger.verify_chain(session_id)

        evidence: list[EvidenceRef] = []
        for entry in entries:
            if entry.kind == EntryKind.EVIDENCE_TRANSCRIPT:
                evidence.append(
                    EvidenceRef(
                        sequence=entry.sequence,
                        kind=entry.kind,
                        timestamp_seconds=float(entry.payload["timestamp_seconds"]),
                        blob_present=True,
                    )
                )
            elif entry.kind == EntryKind.EVIDENCE_FRAME:
                availability = FrameAvailability(entry.payload.get("availability", FrameAvailability.AVAILABLE.value))
                blob_ref = str(entry.payload.get("blob_ref", ""))
                present = availability == FrameAvailability.AVAILABLE
                if present and blob_checker is not None:
                    present = bool(blob_checker(blob_ref))
                evidence.append(
                    EvidenceRef(
                        sequence=entry.sequence,
                        kind=entry.kind,
                        timestamp_seconds=float(entry.payload["timestamp_seconds"]),
                        blob_ref=blob_ref,
                        availability=availability,
                        blob_present=present,
                    )
                )

        bundle = SessionBundle(
            session_id=session_id,
            tip_sequence=tip.sequence,
            tip_hash=tip.entry_hash,
            chain_valid=chain.valid,
            snapshot=projection.snapshot(self.rate_window_seconds),
            evidence=evidence,
        )
        return bundle.model_copy(update={"bundle_hash": bundle.content_hash()})

    def verify(self, session_id: str) -> ReplayVerification:
        """Nightly replay verification: chain, determinism and lineage."""
        chain = self.ledger.verify_chain(session_id)
        tip_sequence = self.ledger.tip(session_id).sequence
        first = self.replay(session_id, tip_sequence)
        second = self.replay(session_id, tip_sequence)
        deterministic = first.canonical_json() == second.canonical_json()

        problems = list(chain.problems)
        if not deterministic:
            problems.append("replaying the same prefix twice produced different snapshots")

        lineage_ok = True
        for note in first.notes:
            rebuilt = SessionProjection(session_id)
            for sequence in note.lineage:
                entry = self.ledger.get(session_id, sequence)
                if entry is None:
                    break
                rebuilt.apply(entry)
            candidate = rebuilt.notes.get(note.note_id)
            if candidate is None or _note_fields(candidate) != _note_fields(note):
                lineage_ok = False
                problems.append(f"note {note.note_id} is not reproduced by its lineage")

        result = ReplayVerification(
            session_id=session_id,
            chain=chain,
            deterministic=deterministic,
            lineage_consistent=lineage_ok,
            snapshot_hash=first.snapshot_hash,
            problems=problems,
        )
        if result.ok:
            logger.info("Replay verification passed for %s (%d entries)", session_id, chain.entries)
        else:
            logger.warning("Replay verification failed for %s: %s", session_id, "; ".join(problems))
        return result

    def verify_or_raise(self, session_id: str) -> ReplayVerification:
        result = self.verify(session_id)
        if not result.ok:
            raise LedgerIntegrityError(f"Session {session_id} failed verification: {'; '.join(result.problems)}")
        return result

    @staticmethod
    def write_bundle(bundle: SessionBundle, exports_dir: Path) -> Path:
        """Write a bundle as sorted-key JSON; returns the file path."""
        exports_dir.mkdir(parents=True, exist_ok=True)
        path = exports_dir / bundle_filename(bundle.session_id, bundle.tip_sequence)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(bundle.model_dump(mode="json"), f, indent=2, sort_keys=True, ensure_ascii=False)
            f.write("\n")
        return path
