"""Durable token-status ledger.

The ledger is the source of truth for resumability. The scheduler owns the in-memory
map of TokenRecords and hands the whole map to `snapshot()` after every batch; nothing
else writes to the backing store.

Two backends share the same contract:

- JsonLedger: a single JSON document in the mint-log format, replaced atomically
  via write-to-temp-then-rename.
- SQLiteLedger: one row per token, replaced inside a single transaction.
"""

import contextlib
import json
import logging
import os
import sqlite3
import tempfile
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from batchmint.constants import ErrorKind, TokenStatus, TERMINAL_STATUS
from batchmint.errors import ConfigError, CorruptStateError, InvalidTransitionError, MetadataError

log = logging.getLogger("batchmint.ledger")

LEDGER_VERSION = 1


@dataclass(slots=True)
class TokenRecord:
    token_id: int
    uri: str | None = None
    status: TokenStatus = TokenStatus.PENDING
    attempts: int = 0
    tx_hash: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
    last_error: str | None = None
    last_error_kind: ErrorKind | None = None
    signer_id: int | None = None
    signer_address: str | None = None
    nonce_used: int | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    failed_at: float | None = None

    def __str__(self):
        return f"token {self.token_id} -- {self.status} -- attempts={self.attempts}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUS

    def set_uri(self, uri: str) -> None:
        if self.uri is not None and self.uri != uri:
            raise ValueError(f"token {self.token_id}: uri is immutable once set")
        self.uri = uri

    def _require(self, wanted: TokenStatus, *allowed: TokenStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(self.token_id, self.status, wanted)

    def mark_in_flight(self) -> None:
        self._require(TokenStatus.IN_FLIGHT, TokenStatus.PENDING)
        self.status = TokenStatus.IN_FLIGHT

    def add_attempts(self, n: int) -> None:
        if n < 0:
            raise ValueError("attempts never decrease")
        self.attempts += n

    def note_error(self, kind: ErrorKind, message: str) -> None:
        self.last_error_kind = kind
        self.last_error = message

    def mark_completed(self, *, tx_hash: str, block_number: int | None, gas_used: int | None,
                       signer_id: int | None = None, signer_address: str | None = None,
                       nonce_used: int | None = None) -> None:
        self._require(TokenStatus.COMPLETED, TokenStatus.IN_FLIGHT)
        self.status = TokenStatus.COMPLETED
        self.tx_hash = tx_hash
        self.block_number = block_number
        self.gas_used = gas_used
        self.signer_id = signer_id
        self.signer_address = signer_address
        self.nonce_used = nonce_used
        self.completed_at = time.time()

    def mark_failed(self, kind: ErrorKind, message: str, *, signer_id: int | None = None,
                    signer_address: str | None = None, nonce_used: int | None = None) -> None:
        self._require(TokenStatus.FAILED, TokenStatus.IN_FLIGHT)
        self.status = TokenStatus.FAILED
        self.note_error(kind, message)
        self.signer_id = signer_id
        self.signer_address = signer_address
        self.nonce_used = nonce_used
        self.failed_at = time.time()

    def return_to_pending(self) -> None:
        """In-flight work that never reached a verdict (interrupt, crash)."""
        self._require(TokenStatus.PENDING, TokenStatus.IN_FLIGHT)
        self.status = TokenStatus.PENDING

    def requeue(self) -> None:
        """Operator-driven manual retry of a Failed record."""
        self._require(TokenStatus.PENDING, TokenStatus.FAILED)
        self.status = TokenStatus.PENDING
        self.failed_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "status": str(self.status),
            "metadataUri": self.uri,
            "attempts": self.attempts,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": None if self.gas_used is None else str(self.gas_used),
            "error": self.last_error,
            "errorType": None if self.last_error_kind is None else str(self.last_error_kind),
            "signerIndex": self.signer_id,
            "signerAddress": self.signer_address,
            "nonce": self.nonce_used,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TokenRecord":
        gas_used = d.get("gasUsed")
        kind = d.get("errorType")
        return cls(
            token_id=int(d["tokenId"]),
            uri=d.get("metadataUri"),
            status=TokenStatus(d.get("status", TokenStatus.PENDING)),
            attempts=int(d.get("attempts") or 0),
            tx_hash=d.get("txHash"),
            block_number=d.get("blockNumber"),
            gas_used=None if gas_used is None else int(gas_used),
            last_error=d.get("error"),
            last_error_kind=None if kind is None else ErrorKind(kind),
            signer_id=d.get("signerIndex"),
            signer_address=d.get("signerAddress"),
            nonce_used=d.get("nonce"),
            created_at=float(d.get("createdAt") or time.time()),
            completed_at=d.get("completedAt"),
            failed_at=d.get("failedAt"),
        )


class Ledger(Protocol):
    def load(self) -> dict[int, TokenRecord]: ...
    def snapshot(self, records: dict[int, TokenRecord], *, signer_stats: dict | None = None) -> None: ...


def summarize(records: dict[int, TokenRecord]) -> dict[str, int]:
    """Derived every time, never stored independently of the records."""
    by_status = Counter(r.status for r in records.values())
    return {
        "total": len(records),
        "successful": by_status[TokenStatus.COMPLETED],
        "failed": by_status[TokenStatus.FAILED],
        "pending": by_status[TokenStatus.PENDING] + by_status[TokenStatus.IN_FLIGHT],
    }


def pending_ids(token_ids: Iterable[int], records: dict[int, TokenRecord], *,
                include_failed: bool = True) -> list[int]:
    """IDs in `token_ids` that still need a mint, in the order given."""
    wanted = {TokenStatus.PENDING, TokenStatus.IN_FLIGHT}
    if include_failed:
        wanted.add(TokenStatus.FAILED)
    out = []
    for token_id in token_ids:
        rec = records.get(token_id)
        if rec is None or rec.status in wanted:
            out.append(token_id)
    return out


def ensure_records(token_ids: Iterable[int], records: dict[int, TokenRecord],
                   resolve_uri: Callable[[int], str]) -> tuple[int, dict[int, str]]:
    """Create a Pending record, with its URI, for every ID the ledger hasn't seen.

    Returns the number of records created and, for tokens whose URI couldn't be resolved,
    the reason. Those records are still created, without a URI.
    """
    created = 0
    unresolved: dict[int, str] = {}
    for token_id in token_ids:
        rec = records.get(token_id)
        if rec is None:
            rec = records[token_id] = TokenRecord(token_id=token_id)
            created += 1
        if rec.uri is not None:
            continue
        try:
            rec.set_uri(resolve_uri(token_id))
        except MetadataError as e:
            unresolved[token_id] = e.reason
    return created, unresolved


def requeue_failed(records: dict[int, TokenRecord], token_ids: Iterable[int] | None = None) -> list[int]:
    """Move Failed records back to Pending. Returns the IDs that moved."""
    candidates = records.keys() if token_ids is None else token_ids
    moved = []
    for token_id in candidates:
        rec = records.get(token_id)
        if rec is not None and rec.status == TokenStatus.FAILED:
            rec.requeue()
            moved.append(token_id)
    if moved:
        log.info("Requeued %s failed tokens", len(moved))
    return moved


def _demote_in_flight(records: dict[int, TokenRecord]) -> None:
    # Nothing can genuinely be in flight after a restart.
    demoted = [r for r in records.values() if r.status == TokenStatus.IN_FLIGHT]
    for rec in demoted:
        rec.return_to_pending()
    if demoted:
        log.warning("Demoted %s in-flight records to pending", len(demoted))


class JsonLedger:
    """Ledger persisted as one JSON document."""

    def __init__(self, path: str | Path, *, label: str | None = None) -> None:
        self.path = Path(path)
        self.label = label

    def load(self) -> dict[int, TokenRecord]:
        if not self.path.exists():
            log.info("No ledger at %s, starting fresh", self.path)
            return {}
        try:
            doc = json.loads(self.path.read_text())
            tokens = doc["tokens"]
            records = {}
            for key, raw in tokens.items():
                raw.setdefault("tokenId", key)
                rec = TokenRecord.from_dict(raw)
                records[rec.token_id] = rec
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise CorruptStateError(str(self.path), f"{type(e).__name__}: {e}") from e

        _demote_in_flight(records)
        log.info("Loaded %s records from %s: %s", len(records), self.path, summarize(records))
        return records

    def snapshot(self, records: dict[int, TokenRecord], *, signer_stats: dict | None = None) -> None:
        doc = {
            "version": LEDGER_VERSION,
            "batch": self.label,
            "updatedAt": time.time(),
            "summary": summarize(records),
            "signerStats": signer_stats or {},
            "tokens": {str(tid): records[tid].to_dict() for tid in sorted(records)},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f_out:
                json.dump(doc, f_out, indent=2)
                f_out.flush()
                os.fsync(f_out.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise
        log.debug("Snapshot %s records to %s", len(records), self.path)


class SQLiteLedger:
    """Ledger backed by SQLite, one row per token."""

    def __init__(self, db_path: str | Path = "ledger.db", *, label: str | None = None) -> None:
        self.db_path = Path(db_path)
        self.label = label

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tokens (
                token_id INTEGER PRIMARY KEY,
                status TEXT NOT NULL,
                updated_at REAL NOT NULL,
                data TEXT NOT NULL  -- JSON blob for all fields
            );
            CREATE INDEX IF NOT EXISTS idx_tokens_status ON tokens(status);

            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
            """
        )

    def load(self) -> dict[int, TokenRecord]:
        if not self.db_path.exists():
            log.info("No ledger at %s, starting fresh", self.db_path)
            return {}
        conn = self._connect()
        try:
            self._init_db(conn)
            rows = conn.execute("SELECT token_id, data FROM tokens").fetchall()
            records = {}
            for token_id, data in rows:
                rec = TokenRecord.from_dict(json.loads(data))
                if rec.token_id != token_id:
                    raise ValueError(f"row {token_id} holds token {rec.token_id}")
                records[token_id] = rec
        except (sqlite3.DatabaseError, ValueError, KeyError, TypeError) as e:
            raise CorruptStateError(str(self.db_path), f"{type(e).__name__}: {e}") from e
        finally:
            conn.close()

        _demote_in_flight(records)
        log.info("Loaded %s records from %s: %s", len(records), self.db_path, summarize(records))
        return records

    def snapshot(self, records: dict[int, TokenRecord], *, signer_stats: dict | None = None) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        now = time.time()
        conn = self._connect()
        try:
            self._init_db(conn)
            # One transaction: readers see the old rows or the new rows, never a mix.
            with conn:
                conn.execute("DELETE FROM tokens")
                conn.executemany(
                    "INSERT INTO tokens (token_id, status, updated_at, data) VALUES (?, ?, ?, ?)",
                    [(r.token_id, str(r.status), now, json.dumps(r.to_dict())) for r in records.values()],
                )
                meta = {
                    "batch": json.dumps(self.label),
                    "summary": json.dumps(summarize(records)),
                    "signerStats": json.dumps(signer_stats or {}),
                    "updatedAt": json.dumps(now),
                }
                conn.executemany(
                    "INSERT INTO meta (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    list(meta.items()),
                )
        finally:
            conn.close()
        log.debug("Snapshot %s records to %s", len(records), self.db_path)


def open_ledger(backend: str, path: str | Path, *, label: str | None = None) -> JsonLedger | SQLiteLedger:
    match backend:
        case "json":
            return JsonLedger(path, label=label)
        case "sqlite":
            return SQLiteLedger(path, label=label)
    raise ConfigError(f"unknown ledger backend {backend!r}")
