"""
Ledger
======
The datastore interface consumed by the pipeline: portfolios, assets and
transactions. Backed by the SQLite tables created in db.init_db(), but the
pipeline only ever calls the methods below.

Transactions are create-only.
"""

import logging
import sqlite3
from typing import Optional

from .db import (
    claim_sync_request, create_sync_request, list_pending_sync_requests,
    mark_sync_request_complete,
)

log = logging.getLogger("investra")


class Ledger:
    """Narrow operations over portfolios, assets and transactions."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # -----------------------------------------------------------------------
    # Transactions
    # -----------------------------------------------------------------------

    def list_transactions(self, portfolio_id: int, symbol: Optional[str] = None,
                          transaction_type: Optional[str] = None,
                          since: Optional[str] = None,
                          until: Optional[str] = None) -> list[dict]:
        """Transactions for a portfolio, optionally filtered.

        `since` / `until` are ISO-8601 bounds on transaction_date (inclusive).
        All stored dates are UTC ISO strings so string comparison orders them.
        """
        sql = "SELECT * FROM transactions WHERE portfolio_id = ?"
        params: list = [portfolio_id]
        if symbol:
            sql += " AND symbol = ?"
            params.append(symbol)
        if transaction_type:
            sql += " AND transaction_type = ?"
            params.append(transaction_type)
        if since:
            sql += " AND transaction_date >= ?"
            params.append(since)
        if until:
            sql += " AND transaction_date <= ?"
            params.append(until)
        sql += " ORDER BY transaction_date, id"
        return [dict(r) for r in self.conn.execute(sql, params).fetchall()]

    def find_transaction_by_source(self, source_message_id: str) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE source_message_id = ?",
            (source_message_id,)
        ).fetchone()
        return dict(row) if row else None

    def create_transaction(self, portfolio_id: int, asset_id: int, symbol: str,
                           transaction_type: str, quantity: float, price: float,
                           transaction_date: str, fees: float = 0.0,
                           total_amount: Optional[float] = None,
                           currency: Optional[str] = None,
                           source_message_id: Optional[str] = None) -> dict:
        """Insert one transaction. Raises sqlite3.IntegrityError on constraint violations."""
        with self.conn:
            cur = self.conn.execute("""
                INSERT INTO transactions
                    (portfolio_id, asset_id, symbol, transaction_type, quantity,
                     price, fees, total_amount, currency, transaction_date,
                     source_message_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (portfolio_id, asset_id, symbol, transaction_type, quantity,
                  price, fees, total_amount, currency, transaction_date,
                  source_message_id))
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
        return dict(row)

    def count_transactions(self, portfolio_id: Optional[int] = None) -> int:
        if portfolio_id is None:
            return self.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
        return self.conn.execute(
            "SELECT COUNT(*) FROM transactions WHERE portfolio_id = ?", (portfolio_id,)
        ).fetchone()[0]

    # -----------------------------------------------------------------------
    # Assets
    # -----------------------------------------------------------------------

    def get_or_create_asset(self, symbol: str, asset_type: str = "stock",
                            name: Optional[str] = None,
                            currency: Optional[str] = None) -> dict:
        with self.conn:
            self.conn.execute("""
                INSERT OR IGNORE INTO assets (symbol, asset_type, name, currency)
                VALUES (?, ?, ?, ?)
            """, (symbol, asset_type, name or symbol, currency))
        row = self.conn.execute(
            "SELECT * FROM assets WHERE symbol = ?", (symbol,)
        ).fetchone()
        return dict(row)

    # -----------------------------------------------------------------------
    # Portfolios
    # -----------------------------------------------------------------------

    def list_portfolios(self, owner: Optional[str] = None) -> list[dict]:
        if owner is None:
            rows = self.conn.execute("SELECT * FROM portfolios ORDER BY id").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM portfolios WHERE owner = ? ORDER BY id", (owner,)
            ).fetchall()
        return [dict(r) for r in rows]

    def find_portfolio(self, owner: str, name: str) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM portfolios WHERE owner = ? AND name = ? COLLATE NOCASE",
            (owner, name)
        ).fetchone()
        return dict(row) if row else None

    def create_portfolio(self, owner: str, name: str, currency: str,
                         description: str = "", account_type: Optional[str] = None
                         ) -> tuple[dict, bool]:
        """Create-if-absent. Returns (portfolio, created).

        The unique (owner, name) constraint makes a concurrent second create a
        no-op that returns the row the first caller inserted.
        """
        with self.conn:
            cur = self.conn.execute("""
                INSERT OR IGNORE INTO portfolios (owner, name, description, currency, account_type)
                VALUES (?, ?, ?, ?, ?)
            """, (owner, name, description, currency, account_type))
        created = cur.rowcount == 1
        portfolio = self.find_portfolio(owner, name)
        if created:
            log.info(f"Created portfolio '{name}' ({currency}) for {owner}")
        return portfolio, created

    # -----------------------------------------------------------------------
    # Sync Requests
    # -----------------------------------------------------------------------

    def list_pending_sync_requests(self, limit: int = 10) -> list[dict]:
        return list_pending_sync_requests(self.conn, limit)

    def claim_sync_request(self, request_id: int) -> bool:
        return claim_sync_request(self.conn, request_id)

    def mark_sync_request_complete(self, request_id: int, success: bool = True,
                                   result: Optional[dict] = None):
        mark_sync_request_complete(self.conn, request_id, success, result)

    def create_sync_request(self, mailbox_id: Optional[str] = None) -> int:
        return create_sync_request(self.conn, mailbox_id)
