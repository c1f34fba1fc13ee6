"""
Database Layer
===============
SQLite schema, migrations, and the message store: the Inbox (fetched but
not yet decided), the Processed archive, the manual review queue, sync run
history, on-demand sync requests and per-mailbox watermarks.

The ledger tables (portfolios, assets, transactions) live in the same
database; see ledger.py for the operations on them.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

log = logging.getLogger("investra")

OUTCOMES = ("success", "duplicate", "parse-failed", "review-required", "error")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Schema & Init
# ---------------------------------------------------------------------------

def init_db(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """Initialize SQLite database with schema."""
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS mailbox_configurations (
            id TEXT PRIMARY KEY,
            name TEXT,
            imap_host TEXT NOT NULL,
            imap_port INTEGER DEFAULT 993,
            username TEXT NOT NULL,
            password_secret TEXT,
            folder TEXT DEFAULT 'INBOX',
            sender_filter TEXT DEFAULT '',
            max_emails_per_sync INTEGER DEFAULT 50,
            is_active INTEGER DEFAULT 1,
            sync_status TEXT DEFAULT 'idle',
            last_error TEXT,
            last_sync_at TEXT,
            emails_synced INTEGER DEFAULT 0,
            created_at TEXT DEFAULT (datetime('now'))
        );

        -- Fetched-but-undecided raw messages.
        CREATE TABLE IF NOT EXISTS inbox (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            uid INTEGER,
            header_message_id TEXT,
            received_at TEXT,
            subject TEXT,
            from_address TEXT,
            html_body TEXT,
            text_body TEXT,
            size_bytes INTEGER DEFAULT 0,
            attempts INTEGER DEFAULT 0,
            last_error TEXT,
            fetched_at TEXT,
            UNIQUE(mailbox_id, message_id)
        );

        -- Archive of messages that reached a terminal outcome.
        CREATE TABLE IF NOT EXISTS processed (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            uid INTEGER,
            header_message_id TEXT,
            received_at TEXT,
            subject TEXT,
            from_address TEXT,
            html_body TEXT,
            text_body TEXT,
            size_bytes INTEGER DEFAULT 0,
            outcome TEXT NOT NULL,
            detail TEXT,
            transaction_id INTEGER,
            parse_method TEXT,
            confidence REAL,
            attempts INTEGER DEFAULT 0,
            processed_at TEXT,
            UNIQUE(mailbox_id, message_id)
        );

        CREATE TABLE IF NOT EXISTS review_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            reason TEXT NOT NULL,
            candidate_json TEXT,
            resolved_symbol TEXT,
            matched_transaction_id INTEGER,
            status TEXT DEFAULT 'pending',
            created_at TEXT DEFAULT (datetime('now')),
            UNIQUE(mailbox_id, message_id)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox_id TEXT,
            trigger TEXT,
            started_at TEXT,
            finished_at TEXT,
            duration_ms INTEGER,
            total_emails_synced INTEGER,
            configurations_synced INTEGER,
            configurations_total INTEGER,
            outcomes_json TEXT,
            errors_json TEXT,
            warnings_json TEXT
        );

        CREATE TABLE IF NOT EXISTS sync_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox_id TEXT,
            request_type TEXT DEFAULT 'manual_sync',
            status TEXT DEFAULT 'pending',
            requested_at TEXT DEFAULT (datetime('now')),
            processed_at TEXT,
            result_json TEXT
        );

        CREATE TABLE IF NOT EXISTS mailbox_state (
            mailbox_id TEXT PRIMARY KEY,
            uid_validity TEXT,
            watermark INTEGER DEFAULT 0,
            updated_at TEXT
        );

        -- Ledger tables (owned by ledger.py).
        CREATE TABLE IF NOT EXISTS portfolios (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            currency TEXT NOT NULL,
            account_type TEXT,
            created_at TEXT DEFAULT (datetime('now')),
            UNIQUE(owner, name)
        );

        CREATE TABLE IF NOT EXISTS assets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL UNIQUE,
            asset_type TEXT,
            name TEXT,
            currency TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            portfolio_id INTEGER NOT NULL REFERENCES portfolios(id),
            asset_id INTEGER NOT NULL REFERENCES assets(id),
            symbol TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            quantity REAL NOT NULL CHECK (quantity > 0),
            price REAL NOT NULL CHECK (price >= 0),
            fees REAL DEFAULT 0 CHECK (fees >= 0),
            total_amount REAL CHECK (total_amount >= 0),
            currency TEXT,
            transaction_date TEXT NOT NULL,
            source_message_id TEXT UNIQUE,
            created_at TEXT DEFAULT (datetime('now'))
        );

        CREATE INDEX IF NOT EXISTS idx_inbox_mailbox ON inbox(mailbox_id, uid);
        CREATE INDEX IF NOT EXISTS idx_processed_outcome ON processed(outcome);
        CREATE INDEX IF NOT EXISTS idx_review_status ON review_queue(status);
        CREATE INDEX IF NOT EXISTS idx_sync_requests_status ON sync_requests(status, requested_at);
        CREATE INDEX IF NOT EXISTS idx_transactions_lookup
            ON transactions(portfolio_id, symbol, transaction_type, transaction_date);
    """)
    conn.commit()
    return conn


def migrate_db(conn: sqlite3.Connection):
    """Apply schema migrations to an existing database.

    Safe to run multiple times -- each migration is idempotent.
    """
    migrations = [
        # v2: per-message attempt tracking for messages left in the Inbox
        "ALTER TABLE inbox ADD COLUMN attempts INTEGER DEFAULT 0",
        "ALTER TABLE inbox ADD COLUMN last_error TEXT",
        # v3: account type recorded on auto-created portfolios
        "ALTER TABLE portfolios ADD COLUMN account_type TEXT",
        "CREATE INDEX IF NOT EXISTS idx_processed_outcome ON processed(outcome)",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Already applied
    conn.commit()
    log.debug("Database migrations applied")


# ---------------------------------------------------------------------------
# Mailbox Configurations
# ---------------------------------------------------------------------------

def add_mailbox_configuration(conn: sqlite3.Connection, mailbox_id: str, imap_host: str,
                              username: str, password_secret: str, imap_port: int = 993,
                              folder: str = "INBOX", sender_filter: str = "",
                              max_emails_per_sync: int = 50, name: str = None):
    """Insert or update a mailbox configuration. Passwords are never stored."""
    conn.execute("""
        INSERT INTO mailbox_configurations
            (id, name, imap_host, imap_port, username, password_secret,
             folder, sender_filter, max_emails_per_sync, is_active)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name, imap_host = excluded.imap_host,
            imap_port = excluded.imap_port, username = excluded.username,
            password_secret = excluded.password_secret, folder = excluded.folder,
            sender_filter = excluded.sender_filter,
            max_emails_per_sync = excluded.max_emails_per_sync, is_active = 1
    """, (mailbox_id, name or mailbox_id, imap_host, imap_port, username,
          password_secret, folder, sender_filter, max_emails_per_sync))
    conn.commit()


def get_active_mailbox_configurations(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute("""
        SELECT * FROM mailbox_configurations
        WHERE is_active = 1
        ORDER BY created_at, id
    """).fetchall()
    return [dict(r) for r in rows]


def update_mailbox_status(conn: sqlite3.Connection, mailbox_id: str, status: str,
                          last_error: Optional[str] = None, emails_synced: int = 0):
    """Record the sync status of a stored configuration (no-op for env mailboxes)."""
    conn.execute("""
        UPDATE mailbox_configurations
        SET sync_status = ?, last_error = ?, last_sync_at = ?,
            emails_synced = emails_synced + ?
        WHERE id = ?
    """, (status, last_error, _now(), emails_synced, mailbox_id))
    conn.commit()


# ---------------------------------------------------------------------------
# Watermarks
# ---------------------------------------------------------------------------

def get_watermark(conn: sqlite3.Connection, mailbox_id: str,
                  uid_validity: Optional[str] = None) -> int:
    """Highest UID known to be staged for this mailbox.

    A changed UIDVALIDITY invalidates all UIDs, so the watermark resets to 0
    (stable message ids keep re-staging idempotent).
    """
    row = conn.execute(
        "SELECT uid_validity, watermark FROM mailbox_state WHERE mailbox_id = ?",
        (mailbox_id,)
    ).fetchone()
    if row is None:
        return 0
    if uid_validity is not None and row["uid_validity"] not in (None, uid_validity):
        log.warning(f"{mailbox_id}: UIDVALIDITY changed "
                    f"({row['uid_validity']} -> {uid_validity}), resetting watermark")
        return 0
    return row["watermark"] or 0


def set_watermark(conn: sqlite3.Connection, mailbox_id: str, watermark: int,
                  uid_validity: Optional[str] = None):
    conn.execute("""
        INSERT INTO mailbox_state (mailbox_id, uid_validity, watermark, updated_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(mailbox_id) DO UPDATE SET
            uid_validity = excluded.uid_validity,
            watermark = excluded.watermark,
            updated_at = excluded.updated_at
    """, (mailbox_id, uid_validity, watermark, _now()))
    conn.commit()


# ---------------------------------------------------------------------------
# Inbox / Processed
# ---------------------------------------------------------------------------

_MESSAGE_COLUMNS = ("mailbox_id", "message_id", "uid", "header_message_id", "received_at",
                    "subject", "from_address", "html_body", "text_body", "size_bytes")


def is_processed(conn: sqlite3.Connection, mailbox_id: str, message_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM processed WHERE mailbox_id = ? AND message_id = ?",
        (mailbox_id, message_id)
    ).fetchone()
    return row is not None


def is_known_message(conn: sqlite3.Connection, mailbox_id: str, message_id: str) -> bool:
    """True when the message is already staged in the Inbox or processed."""
    row = conn.execute(
        """SELECT 1 FROM inbox WHERE mailbox_id = ? AND message_id = ?
           UNION ALL
           SELECT 1 FROM processed WHERE mailbox_id = ? AND message_id = ?
           LIMIT 1""",
        (mailbox_id, message_id, mailbox_id, message_id)
    ).fetchone()
    return row is not None


def stage_message(conn: sqlite3.Connection, raw: dict) -> bool:
    """Put a fetched RawMessage into the Inbox.

    Returns False when the message is already staged or already processed,
    so fetching the same mailbox message twice yields one entry.
    """
    if is_processed(conn, raw["mailbox_id"], raw["message_id"]):
        return False
    values = [raw.get(col) for col in _MESSAGE_COLUMNS]
    cur = conn.execute(
        f"INSERT OR IGNORE INTO inbox ({', '.join(_MESSAGE_COLUMNS)}, fetched_at) "
        f"VALUES ({', '.join('?' * len(_MESSAGE_COLUMNS))}, ?)",
        values + [_now()]
    )
    conn.commit()
    return cur.rowcount == 1


def list_inbox(conn: sqlite3.Connection, mailbox_id: str, limit: Optional[int] = None) -> list[dict]:
    """Inbox messages for one mailbox in listing order (UID, then receive time)."""
    sql = """
        SELECT * FROM inbox WHERE mailbox_id = ?
        ORDER BY COALESCE(uid, 0), received_at, id
    """
    params: list = [mailbox_id]
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def record_attempt(conn: sqlite3.Connection, mailbox_id: str, message_id: str,
                   error: str) -> int:
    """Count a failed attempt on a message left in the Inbox. Returns the new count."""
    conn.execute("""
        UPDATE inbox SET attempts = attempts + 1, last_error = ?
        WHERE mailbox_id = ? AND message_id = ?
    """, (error[:1000], mailbox_id, message_id))
    conn.commit()
    row = conn.execute(
        "SELECT attempts FROM inbox WHERE mailbox_id = ? AND message_id = ?",
        (mailbox_id, message_id)
    ).fetchone()
    return row["attempts"] if row else 0


def archive_message(conn: sqlite3.Connection, message: dict, outcome: str,
                    detail: str = "", transaction_id: Optional[int] = None,
                    parse_method: Optional[str] = None,
                    confidence: Optional[float] = None) -> bool:
    """Move a message from the Inbox to Processed with its terminal outcome.

    Insert and delete happen in one SQLite transaction. Returns False if the
    message was already archived.
    """
    if outcome not in OUTCOMES:
        raise ValueError(f"Unknown outcome: {outcome}")

    mailbox_id, message_id = message["mailbox_id"], message["message_id"]
    with conn:
        row = conn.execute(
            "SELECT * FROM inbox WHERE mailbox_id = ? AND message_id = ?",
            (mailbox_id, message_id)
        ).fetchone()
        source = dict(row) if row else message
        cur = conn.execute(
            f"INSERT OR IGNORE INTO processed ({', '.join(_MESSAGE_COLUMNS)}, outcome, detail, "
            f"transaction_id, parse_method, confidence, attempts, processed_at) "
            f"VALUES ({', '.join('?' * len(_MESSAGE_COLUMNS))}, ?, ?, ?, ?, ?, ?, ?)",
            [source.get(col) for col in _MESSAGE_COLUMNS]
            + [outcome, detail[:1000], transaction_id, parse_method, confidence,
               source.get("attempts") or 0, _now()]
        )
        conn.execute("DELETE FROM inbox WHERE mailbox_id = ? AND message_id = ?",
                     (mailbox_id, message_id))
    return cur.rowcount == 1


def count_outcomes(conn: sqlite3.Connection, mailbox_id: Optional[str] = None) -> dict:
    sql = "SELECT outcome, COUNT(*) AS n FROM processed"
    params: list = []
    if mailbox_id:
        sql += " WHERE mailbox_id = ?"
        params.append(mailbox_id)
    sql += " GROUP BY outcome"
    return {r["outcome"]: r["n"] for r in conn.execute(sql, params).fetchall()}


# ---------------------------------------------------------------------------
# Manual Review Queue
# ---------------------------------------------------------------------------

def enqueue_review(conn: sqlite3.Connection, mailbox_id: str, message_id: str, reason: str,
                   candidate: Optional[dict] = None, resolved_symbol: Optional[str] = None,
                   matched_transaction_id: Optional[int] = None):
    conn.execute("""
        INSERT OR IGNORE INTO review_queue
            (mailbox_id, message_id, reason, candidate_json, resolved_symbol,
             matched_transaction_id)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (mailbox_id, message_id, reason[:1000],
          json.dumps(candidate, default=str) if candidate else None,
          resolved_symbol, matched_transaction_id))
    conn.commit()


def list_review_queue(conn: sqlite3.Connection, status: str = "pending",
                      limit: int = 100) -> list[dict]:
    rows = conn.execute("""
        SELECT * FROM review_queue WHERE status = ?
        ORDER BY created_at, id LIMIT ?
    """, (status, limit)).fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Sync Runs & Sync Requests
# ---------------------------------------------------------------------------

def store_sync_run(conn: sqlite3.Connection, summary: dict) -> int:
    """Persist a SyncRunSummary (write-once)."""
    cur = conn.execute("""
        INSERT INTO sync_runs
            (mailbox_id, trigger, started_at, finished_at, duration_ms,
             total_emails_synced, configurations_synced, configurations_total,
             outcomes_json, errors_json, warnings_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (summary.get("mailbox_id"), summary.get("trigger"),
          summary.get("started_at"), summary.get("finished_at"),
          summary.get("duration_ms"), summary.get("total_emails_synced", 0),
          summary.get("configurations_synced", 0), summary.get("configurations_total", 0),
          json.dumps(summary.get("outcomes", {})),
          json.dumps(summary.get("errors", [])),
          json.dumps(summary.get("warnings", []))))
    conn.commit()
    return cur.lastrowid


def list_sync_runs(conn: sqlite3.Connection, limit: int = 20) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()
    results = []
    for r in rows:
        run = dict(r)
        run["outcomes"] = json.loads(run.pop("outcomes_json") or "{}")
        run["errors"] = json.loads(run.pop("errors_json") or "[]")
        run["warnings"] = json.loads(run.pop("warnings_json") or "[]")
        results.append(run)
    return results


def create_sync_request(conn: sqlite3.Connection, mailbox_id: Optional[str] = None,
                        request_type: str = "manual_sync") -> int:
    cur = conn.execute(
        "INSERT INTO sync_requests (mailbox_id, request_type) VALUES (?, ?)",
        (mailbox_id, request_type)
    )
    conn.commit()
    return cur.lastrowid


def list_pending_sync_requests(conn: sqlite3.Connection, limit: int = 10) -> list[dict]:
    rows = conn.execute("""
        SELECT * FROM sync_requests WHERE status = 'pending'
        ORDER BY requested_at, id LIMIT ?
    """, (limit,)).fetchall()
    return [dict(r) for r in rows]


def claim_sync_request(conn: sqlite3.Connection, request_id: int) -> bool:
    """pending -> processing. False when another worker claimed it first."""
    cur = conn.execute("""
        UPDATE sync_requests SET status = 'processing'
        WHERE id = ? AND status = 'pending'
    """, (request_id,))
    conn.commit()
    return cur.rowcount == 1


def mark_sync_request_complete(conn: sqlite3.Connection, request_id: int,
                               success: bool, result: Optional[dict] = None):
    conn.execute("""
        UPDATE sync_requests
        SET status = ?, processed_at = ?, result_json = ?
        WHERE id = ?
    """, ("completed" if success else "failed", _now(),
          json.dumps(result or {}, default=str), request_id))
    conn.commit()
