"""
Transaction Writer
===================
The only component that mutates the ledger: asset get-or-create, then one
transaction insert. Duplicate checks belong to the caller; the unique
source-message constraint is the last line against a double write.
"""

import logging
import math
import sqlite3

from .duplicates import ledger_timestamp

log = logging.getLogger("investra")


class WriteError(Exception):
    """The ledger rejected or failed the write."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class DuplicateWriteError(WriteError):
    """A transaction for this source message already exists."""


_NUMERIC_FIELDS = ("quantity", "price", "fees", "total_amount")


class TransactionWriter:

    def __init__(self, ledger):
        self.ledger = ledger

    def create(self, portfolio_id: int, resolved, trade_fields: dict) -> dict:
        for name in _NUMERIC_FIELDS:
            value = trade_fields.get(name)
            if name in ("fees", "total_amount") and value is None:
                continue
            if value is None or not math.isfinite(value) or value < 0:
                raise WriteError(f"refusing to write non-finite or negative {name}: {value!r}")
        if trade_fields["quantity"] <= 0:
            raise WriteError("refusing to write non-positive quantity")

        symbol = resolved.normalized_symbol
        try:
            asset = self.ledger.get_or_create_asset(
                symbol, asset_type=resolved.asset_type,
                name=trade_fields.get("asset_name"),
                currency=trade_fields.get("currency"),
            )
            tx = self.ledger.create_transaction(
                portfolio_id, asset["id"], symbol,
                trade_fields["transaction_type"],
                trade_fields["quantity"], trade_fields["price"],
                ledger_timestamp(trade_fields["transaction_datetime"]),
                fees=trade_fields.get("fees") or 0.0,
                total_amount=trade_fields.get("total_amount"),
                currency=trade_fields.get("currency"),
                source_message_id=trade_fields.get("source_message_id"),
            )
        except sqlite3.IntegrityError as e:
            if "source_message_id" in str(e):
                raise DuplicateWriteError(
                    f"transaction for message {trade_fields.get('source_message_id')} exists") from e
            raise WriteError(f"ledger constraint violated: {e}") from e
        except sqlite3.OperationalError as e:
            # Locked or busy database
            raise WriteError(f"ledger unavailable: {e}", transient=True) from e

        log.info(f"Created transaction {tx['id']}: {tx['transaction_type']} "
                 f"{tx['quantity']} {symbol} @ {tx['price']} (portfolio {portfolio_id})")
        return tx
