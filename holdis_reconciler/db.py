"""
Holdis Reconciler - SQLite Persistence Layer
Cursor checkpoint, custody records, idempotency entries and operational alerts.

Every write that guards an invariant is a compare-and-set UPDATE whose rowcount
tells the caller whether it won, so concurrent workers and a restarted process
can never regress the cursor, overwrite a successful outcome, or move a custody
record out of `held` twice.
"""

import os
import json
import sqlite3
import hashlib
import logging
from datetime import datetime, timezone
from contextlib import contextmanager

logger = logging.getLogger(__name__)

CUSTODY_HELD = "held"
CUSTODY_RELEASED = "released"
CUSTODY_REFUNDED = "refunded"
CUSTODY_TERMINAL = (CUSTODY_RELEASED, CUSTODY_REFUNDED)

ENTRY_PENDING = "pending"
ENTRY_SUCCESS = "success"
ENTRY_FAILED = "failed"


# ============================================================
# Schema
# ============================================================

SCHEMA_SQL = """
-- Highest block whose events are fully reconciled (single row)
CREATE TABLE IF NOT EXISTS cursor (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    block_number INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

-- Funds held off-chain on behalf of an invoice
CREATE TABLE IF NOT EXISTS custody_records (
    invoice_id INTEGER PRIMARY KEY,
    payer TEXT NOT NULL,
    receiver TEXT NOT NULL DEFAULT '',
    amount TEXT NOT NULL,
    asset TEXT NOT NULL,
    requires_delivery INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'held',
    funded_block INTEGER,
    funded_log_index INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_custody_status ON custody_records(status);

-- Outcome of every logical operation, keyed deterministically
CREATE TABLE IF NOT EXISTS idempotency_entries (
    key TEXT PRIMARY KEY,
    invoice_id INTEGER,
    operation TEXT NOT NULL,
    payload_json TEXT NOT NULL DEFAULT '{}',
    payload_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    provider_ref TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_idem_status ON idempotency_entries(status);
CREATE INDEX IF NOT EXISTS idx_idem_invoice ON idempotency_entries(invoice_id);
CREATE INDEX IF NOT EXISTS idx_idem_provider_ref ON idempotency_entries(provider_ref);

-- Non-fatal operational alerts awaiting a human
CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    invoice_id INTEGER,
    key TEXT,
    message TEXT NOT NULL,
    acknowledged INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_alert_ack ON alerts(acknowledged);
"""


def _now():
    return datetime.now(timezone.utc).isoformat()


def payload_hash(payload):
    """SHA-256 over the canonical JSON form of a request payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class Database:
    """Durable store shared by the engine, gateway and webhook handler."""

    def __init__(self, path):
        self.path = path

    # ============================================================
    # Connection Management
    # ============================================================

    def get_connection(self):
        """Get a SQLite connection with WAL mode."""
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def get_db(self):
        """Context manager for database connections with auto-commit."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self):
        with self.get_db() as conn:
            conn.executescript(SCHEMA_SQL)
        return self

    # ============================================================
    # Cursor
    # ============================================================

    def get_cursor(self):
        """Highest fully reconciled block, or None before the first range."""
        with self.get_db() as conn:
            row = conn.execute("SELECT block_number FROM cursor WHERE id = 1").fetchone()
            return row[0] if row else None

    def set_cursor(self, block_number):
        """
        Move the cursor forward. Returns False (and leaves it untouched) when
        block_number is behind the stored value.
        """
        with self.get_db() as conn:
            conn.execute(
                "INSERT INTO cursor (id, block_number, updated_at) VALUES (1, ?, ?) "
                "ON CONFLICT(id) DO NOTHING",
                (block_number, _now()),
            )
            cur = conn.execute(
                "UPDATE cursor SET block_number = ?, updated_at = ? "
                "WHERE id = 1 AND block_number <= ?",
                (block_number, _now(), block_number),
            )
            return cur.rowcount == 1

    def compare_and_set_cursor(self, expected, block_number):
        """Advance only if nobody else moved the cursor since `expected` was read."""
        if expected is not None and block_number < expected:
            return False
        with self.get_db() as conn:
            if expected is None:
                cur = conn.execute(
                    "INSERT INTO cursor (id, block_number, updated_at) VALUES (1, ?, ?) "
                    "ON CONFLICT(id) DO NOTHING",
                    (block_number, _now()),
                )
            else:
                cur = conn.execute(
                    "UPDATE cursor SET block_number = ?, updated_at = ? "
                    "WHERE id = 1 AND block_number = ?",
                    (block_number, _now(), expected),
                )
            return cur.rowcount == 1

    # ============================================================
    # Custody Records
    # ============================================================

    def create_custody_record(self, invoice_id, payer, amount, asset, receiver="",
                              requires_delivery=False, funded_block=None,
                              funded_log_index=None):
        """Insert a `held` record. Returns False if the invoice already has one."""
        now = _now()
        with self.get_db() as conn:
            cur = conn.execute("""
                INSERT OR IGNORE INTO custody_records
                (invoice_id, payer, receiver, amount, asset, requires_delivery,
                 status, funded_block, funded_log_index, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                invoice_id, payer, receiver or "", str(amount), asset,
                1 if requires_delivery else 0, CUSTODY_HELD,
                funded_block, funded_log_index, now, now,
            ))
            return cur.rowcount == 1

    def get_custody_record(self, invoice_id):
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM custody_records WHERE invoice_id = ?", (invoice_id,)
            ).fetchone()
            return _custody_row_to_dict(row)

    def list_custody_records(self, status=None):
        with self.get_db() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM custody_records WHERE status = ? ORDER BY invoice_id",
                    (status,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM custody_records ORDER BY invoice_id"
                ).fetchall()
            return [_custody_row_to_dict(r) for r in rows]

    def transition_custody(self, invoice_id, new_status):
        """Move a `held` record to released/refunded. Returns True only for the winner."""
        if new_status not in CUSTODY_TERMINAL:
            raise ValueError(f"Invalid custody transition target: {new_status}")
        with self.get_db() as conn:
            cur = conn.execute(
                "UPDATE custody_records SET status = ?, updated_at = ? "
                "WHERE invoice_id = ? AND status = ?",
                (new_status, _now(), invoice_id, CUSTODY_HELD),
            )
            return cur.rowcount == 1

    # ============================================================
    # Idempotency Entries
    # ============================================================

    def get_entry(self, key):
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_entries WHERE key = ?", (key,)
            ).fetchone()
            return _entry_row_to_dict(row)

    def put_entry(self, key, operation, payload, invoice_id=None):
        """
        Record a pending entry if the key is new. Returns the stored entry either
        way; the caller compares payload hashes to detect a conflicting reuse.
        """
        now = _now()
        with self.get_db() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO idempotency_entries
                (key, invoice_id, operation, payload_json, payload_hash, status,
                 attempts, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
            """, (
                key, invoice_id, operation,
                json.dumps(payload, sort_keys=True, default=str),
                payload_hash(payload), ENTRY_PENDING, now, now,
            ))
            row = conn.execute(
                "SELECT * FROM idempotency_entries WHERE key = ?", (key,)
            ).fetchone()
            return _entry_row_to_dict(row)

    _ENTRY_COLUMNS = {"status", "provider_ref", "error", "attempts"}

    def compare_and_swap(self, key, expected_status, **changes):
        """
        Update an entry only if it is still in expected_status. A `success`
        entry never matches, so resolved outcomes are immutable.
        """
        if expected_status == ENTRY_SUCCESS:
            return False
        set_clauses = []
        params = []
        for col, val in changes.items():
            if col not in self._ENTRY_COLUMNS:
                raise ValueError(f"Invalid idempotency column: {col}")
            set_clauses.append(f"{col} = ?")
            params.append(val)
        set_clauses.append("updated_at = ?")
        params.extend([_now(), key, expected_status])
        with self.get_db() as conn:
            cur = conn.execute(
                f"UPDATE idempotency_entries SET {', '.join(set_clauses)} "
                f"WHERE key = ? AND status = ? AND status != 'success'",
                params,
            )
            return cur.rowcount == 1

    def record_attempt(self, key, error):
        """Bump the attempt counter of a non-successful entry; returns the new count."""
        with self.get_db() as conn:
            conn.execute(
                "UPDATE idempotency_entries SET attempts = attempts + 1, error = ?, "
                "updated_at = ? WHERE key = ? AND status != 'success'",
                (str(error)[:1000], _now(), key),
            )
            row = conn.execute(
                "SELECT attempts FROM idempotency_entries WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else 0

    def resolve_entry(self, key, status, provider_ref=None, error=None):
        """Move a non-successful entry to a terminal outcome (success or failed)."""
        with self.get_db() as conn:
            cur = conn.execute(
                "UPDATE idempotency_entries SET status = ?, "
                "provider_ref = COALESCE(?, provider_ref), error = ?, updated_at = ? "
                "WHERE key = ? AND status != 'success'",
                (status, provider_ref, error, _now(), key),
            )
            return cur.rowcount == 1

    def find_entry_by_provider_ref(self, provider_ref):
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM idempotency_entries WHERE provider_ref = ?",
                (provider_ref,),
            ).fetchone()
            return _entry_row_to_dict(row)

    def list_entries(self, status=None, operation=None, invoice_id=None):
        with self.get_db() as conn:
            query = "SELECT * FROM idempotency_entries WHERE 1=1"
            params = []
            if status:
                query += " AND status = ?"
                params.append(status)
            if operation:
                query += " AND operation = ?"
                params.append(operation)
            if invoice_id is not None:
                query += " AND invoice_id = ?"
                params.append(invoice_id)
            query += " ORDER BY created_at ASC, rowid ASC"
            return [_entry_row_to_dict(r) for r in conn.execute(query, params).fetchall()]

    # ============================================================
    # Alerts
    # ============================================================

    def insert_alert(self, kind, message, invoice_id=None, key=None):
        with self.get_db() as conn:
            cur = conn.execute(
                "INSERT INTO alerts (kind, invoice_id, key, message, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (kind, invoice_id, key, message, _now()),
            )
            return cur.lastrowid

    def list_alerts(self, include_acknowledged=False, limit=100):
        with self.get_db() as conn:
            query = "SELECT * FROM alerts"
            if not include_acknowledged:
                query += " WHERE acknowledged = 0"
            query += " ORDER BY id DESC LIMIT ?"
            return [dict(r) for r in conn.execute(query, (limit,)).fetchall()]

    def acknowledge_alert(self, alert_id):
        with self.get_db() as conn:
            cur = conn.execute(
                "UPDATE alerts SET acknowledged = 1 WHERE id = ?", (alert_id,)
            )
            return cur.rowcount == 1


def _custody_row_to_dict(row):
    if row is None:
        return None
    d = dict(row)
    d["amount"] = int(d["amount"])
    d["requires_delivery"] = bool(d["requires_delivery"])
    return d


def _entry_row_to_dict(row):
    if row is None:
        return None
    d = dict(row)
    try:
        d["payload"] = json.loads(d.pop("payload_json", "{}"))
    except (json.JSONDecodeError, TypeError):
        d["payload"] = {}
    return d
