"""Append-only, hash-chained ledger store for noteledger.

Every session owns an independent chain of entries in a sqlite database.
Appends are optimistic: the writer reads the chain tip, computes the next
entry and inserts it; if another writer advanced the tip in between, the
insert violates the (session_id, sequence) key and a ChainConflict is
raised. Nothing is ever updated or deleted.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from .errors import ChainConflict
from .hashing import GENESIS_HASH, payload_hash
from .models.ledger import EntryKind, LedgerEntry
from .models.snapshot import ChainReport

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChainTip:
    sequence: int
    entry_hash: str

    @property
    def next_sequence(self) -> int:
        return self.sequence + 1


EMPTY_TIP = ChainTip(sequence=-1, entry_hash=GENESIS_HASH)


@dataclass(frozen=True)
class PendingEntry:
    """An entry waiting to be appended as part of a batch."""

    kind: EntryKind
    payload: dict[str, Any]
    references: tuple[int, ...] = field(default_factory=tuple)


class LedgerRange:
    """Lazy, ordered, finite and restartable view over a slice of a session chain.

    The upper bound is fixed when the range is created, so iterating twice
    yields the same entries even if writers append in between.
    """

    def __init__(self, store: "LedgerStore", session_id: str, from_sequence: int, to_sequence: int):
        self.store = store
        self.session_id = session_id
        self.from_sequence = max(0, from_sequence)
        self.to_sequence = to_sequence

    def __iter__(self) -> Iterator[LedgerEntry]:
        page_size = self.store.page_size
        cursor = self.from_sequence - 1
        while cursor < self.to_sequence:
            conn = self.store._connect()
            try:
                rows = conn.execute(
                    "SELECT * FROM entries WHERE session_id = ? AND sequence > ? AND sequence <= ? "
                    "ORDER BY sequence LIMIT ?",
                    (self.session_id, cursor, self.to_sequence, page_size),
                ).fetchall()
            finally:
                conn.close()
            if not rows:
                return
            for row in rows:
                entry = _row_to_entry(row)
                cursor = entry.sequence
                yield entry

    def __len__(self) -> int:
        if self.to_sequence < self.from_sequence:
            return 0
        return self.to_sequence - self.from_sequence + 1

    def __repr__(self) -> str:
        return f"LedgerRange({self.session_id!r}, {self.from_sequence}..{self.to_sequence})"


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        session_id=str(row["session_id"]),
        sequence=int(row["sequence"]),
        kind=EntryKind(str(row["kind"])),
        payload=json.loads(str(row["payload_json"])),
        payload_hash=str(row["payload_hash"]),
        prev_hash=str(row["prev_hash"]),
        entry_hash=str(row["entry_hash"]),
        created_at=datetime.fromisoformat(str(row["created_at"])),
        references=list(json.loads(str(row["references_json"]))),
    )


class LedgerStore:
    """Sqlite-backed ledger shared by every writer in the system.

    Each operation opens its own connection so readers never hold locks
    that block writers, and independent processes can share one file.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Optional[Clock] = None,
        page_size: int = 256,
        max_append_attempts: int = 5,
    ):
        """Initialize the ledger store.

        Args:
            db_path: Path to the sqlite database file
            clock: Optional callable returning the current UTC datetime
            page_size: Rows fetched per page when iterating a LedgerRange
            max_append_attempts: Attempts made by append_with_retry
        """
        self.db_path = db_path
        self.clock: Clock = clock or utc_now
        self.page_size = page_size
        self.max_append_attempts = max_append_attempts
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS entries(
                  session_id TEXT NOT NULL,
                  sequence INTEGER NOT NULL,
                  kind TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  payload_hash TEXT NOT NULL,
                  prev_hash TEXT NOT NULL,
                  entry_hash TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  references_json TEXT NOT NULL,
                  PRIMARY KEY(session_id, sequence),
                  UNIQUE(session_id, prev_hash)
                );

                CREATE INDEX IF NOT EXISTS idx_entries_kind ON entries(session_id, kind);
                """
            )
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read_tip(self, conn: sqlite3.Connection, session_id: str) -> ChainTip:
        row = conn.execute(
            "SELECT sequence, entry_hash FROM entries WHERE session_id = ? ORDER BY sequence DESC LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return EMPTY_TIP
        return ChainTip(sequence=int(row["sequence"]), entry_hash=str(row["entry_hash"]))

    def tip(self, session_id: str) -> ChainTip:
        conn = self._connect()
        try:
            return self._read_tip(conn, session_id)
        finally:
            conn.close()

    def read(self, session_id: str, from_sequence: int = 0, to_sequence: Optional[int] = None) -> LedgerRange:
        """Return a restartable range of entries.

        Args:
            session_id: Session to read
            from_sequence: First sequence (inclusive)
            to_sequence: Last sequence (inclusive); defaults to the current tip

        Returns:
            LedgerRange bounded at creation time
        """
        if to_sequence is None:
            to_sequence = self.tip(session_id).sequence
        return LedgerRange(self, session_id, from_sequence, to_sequence)

    def get(self, session_id: str, sequence: int) -> Optional[LedgerEntry]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM entries WHERE session_id = ? AND sequence = ?",
                (session_id, sequence),
            ).fetchone()
            return _row_to_entry(row) if row is not None else None
        finally:
            conn.close()

    def tail(self, session_id: str, n: int = 20) -> list[LedgerEntry]:
        """Read the last N entries of a session, oldest first."""
        tip = self.tip(session_id)
        return list(self.read(session_id, from_sequence=tip.sequence - n + 1, to_sequence=tip.sequence))

    def sessions(self) -> list[str]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT DISTINCT session_id FROM entries ORDER BY session_id").fetchall()
            return [str(r["session_id"]) for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def _build_entry(
        self,
        session_id: str,
        tip: ChainTip,
        kind: EntryKind,
        payload: dict[str, Any],
        references: Iterable[int],
        created_at: datetime,
    ) -> LedgerEntry:
        sequence = tip.next_sequence
        refs = sorted(set(int(r) for r in references))
        bad = [r for r in refs if r < 0 or r >= sequence]
        if bad:
            raise ValueError(f"Entry {sequence} cannot reference sequences {bad}")
        phash = payload_hash(payload)
        return LedgerEntry(
            session_id=session_id,
            sequence=sequence,
            kind=kind,
            payload=payload,
            payload_hash=phash,
            prev_hash=tip.entry_hash,
            entry_hash=LedgerEntry.compute_hash(
                session_id=session_id,
                sequence=sequence,
                kind=kind,
                payload_hash=phash,
                prev_hash=tip.entry_hash,
                created_at=created_at,
                references=refs,
            ),
            created_at=created_at,
            references=refs,
        )

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO entries(
              session_id, sequence, kind, payload_json, payload_hash,
              prev_hash, entry_hash, created_at, references_json
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.session_id,
                entry.sequence,
                entry.kind.value,
                json.dumps(entry.payload, ensure_ascii=False, sort_keys=True),
                entry.payload_hash,
                entry.prev_hash,
                entry.entry_hash,
                entry.created_at.isoformat(),
                json.dumps(entry.references),
            ),
        )

    def append(
        self,
        session_id: str,
        kind: EntryKind,
        payload: dict[str, Any],
        references: Iterable[int] = (),
        *,
        expected_tip: Optional[str] = None,
    ) -> LedgerEntry:
        """Append one entry to a session chain.

        Args:
            session_id: Session to append to
            kind: Entry kind
            payload: Kind-specific payload (JSON-serializable)
            references: Prior sequences this entry depends on
            expected_tip: entry_hash the caller believes is the tip

        Returns:
            The appended LedgerEntry

        Raises:
            ChainConflict: If the tip moved between read and write
        """
        return self.append_batch(
            session_id,
            [PendingEntry(kind=kind, payload=payload, references=tuple(references))],
            expected_tip=expected_tip,
        )[0]

    def append_batch(
        self,
        session_id: str,
        items: list[PendingEntry],
        *,
        expected_tip: Optional[str] = None,
    ) -> list[LedgerEntry]:
        """Append several entries in one transaction; all land or none do."""
        if not items:
            return []
        conn = self._connect()
        try:
            tip = self._read_tip(conn, session_id)
            if expected_tip is not None and expected_tip != tip.entry_hash:
                raise ChainConflict(session_id, expected_tip, tip.entry_hash)

            created_at = self.clock()
            entries: list[LedgerEntry] = []
            for item in items:
                entry = self._build_entry(session_id, tip, item.kind, item.payload, item.references, created_at)
                entries.append(entry)
                tip = ChainTip(sequence=entry.sequence, entry_hash=entry.entry_hash)

            try:
                with conn:
                    for entry in entries:
                        self._insert(conn, entry)
            except sqlite3.IntegrityError as e:
                actual = self._read_tip(conn, session_id)
                logger.debug("Append race on session %s: %s", session_id, e)
                raise ChainConflict(session_id, entries[0].prev_hash, actual.entry_hash) from e
        finally:
            conn.close()

        for entry in entries:
            logger.debug("Appended %s #%d to session %s", entry.kind.value, entry.sequence, session_id)
        return entries

    def append_with_retry(
        self,
        session_id: str,
        kind: EntryKind,
        payload: dict[str, Any],
        references: Iterable[int] = (),
    ) -> LedgerEntry:
        """Append, re-reading the tip after each ChainConflict."""
        refs = tuple(references)
        last_error: Optional[ChainConflict] = None
        for attempt in range(1, self.max_append_attempts + 1):
            try:
                return self.append(session_id, kind, payload, refs)
            except ChainConflict as e:
                last_error = e
                logger.info(
                    "Chain conflict on session %s (attempt %d/%d), retrying with fresh tip",
                    session_id,
                    attempt,
                    self.max_append_attempts,
                )
        assert last_error is not None
        raise last_error

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(self, session_id: str) -> ChainReport:
        """Check linkage, gapless sequences and recomputed hashes."""
        problems: list[str] = []
        prev_hash = GENESIS_HASH
        expected_seq = 0
        count = 0
        for entry in self.read(session_id):
            count += 1
            if entry.sequence != expected_seq:
                problems.append(f"sequence gap: expected {expected_seq}, found {entry.sequence}")
            if entry.prev_hash != prev_hash:
                problems.append(f"#{entry.sequence}: prev_hash does not match previous entry hash")
            if payload_hash(entry.payload) != entry.payload_hash:
                problems.append(f"#{entry.sequence}: payload_hash mismatch")
            if entry.recompute_hash() != entry.entry_hash:
                problems.append(f"#{entry.sequence}: entry_hash mismatch")
            prev_hash = entry.entry_hash
            expected_seq = entry.sequence + 1
        return ChainReport(session_id=session_id, entries=count, valid=not problems, problems=problems)
