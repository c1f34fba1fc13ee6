"""
Duplicate Detector
===================
Flags a parsed candidate that matches a transaction already in the ledger
for the same portfolio, symbol and transaction type, within a time window
around the candidate's trade time.

Compared values per transaction type:
  buy / sell       quantity and price
  dividend         total amount
  option_expired   quantity

A failed ledger lookup yields a "unique" verdict: a missed duplicate can be
merged later, a blocked ingestion cannot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

log = logging.getLogger("investra")

EXACT_TIME_SECONDS = 60


@dataclass(frozen=True)
class DuplicateVerdict:
    is_duplicate: bool
    kind: str            # unique | probable-duplicate | exact-duplicate
    matched_transaction_id: Optional[int]
    reason: str


def to_utc(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    stamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(timezone.utc)


def ledger_timestamp(value: str) -> str:
    """Canonical stored form of a transaction time: UTC, whole seconds."""
    return to_utc(value).replace(microsecond=0).isoformat()


def _close(a, b, tolerance: float) -> bool:
    if a is None or b is None:
        return False
    return abs(float(a) - float(b)) <= tolerance + 1e-9


class DuplicateDetector:
    """check(candidate, resolved, portfolio_id) -> DuplicateVerdict."""

    def __init__(self, ledger, window_hours: float = 24.0, tolerance: float = 0.01):
        self.ledger = ledger
        self.window = timedelta(hours=window_hours)
        self.tolerance = tolerance

    def _values_match(self, candidate: dict, existing: dict) -> bool:
        tx_type = candidate["transaction_type"]
        if tx_type == "dividend":
            cand_total = candidate.get("total_amount")
            if cand_total is None:
                cand_total = candidate["quantity"] * candidate["price"]
            existing_total = existing.get("total_amount")
            if existing_total is None:
                existing_total = existing["quantity"] * existing["price"]
            return _close(cand_total, existing_total, self.tolerance)
        if tx_type == "option_expired":
            return _close(candidate["quantity"], existing["quantity"], self.tolerance)
        return (_close(candidate["quantity"], existing["quantity"], self.tolerance)
                and _close(candidate["price"], existing["price"], self.tolerance))

    def check(self, candidate: dict, resolved, portfolio_id: Optional[int]) -> DuplicateVerdict:
        if portfolio_id is None:
            return DuplicateVerdict(False, "unique", None, "no portfolio yet")

        symbol = resolved.normalized_symbol
        tx_type = candidate["transaction_type"]
        try:
            when = to_utc(candidate["transaction_datetime"])
            existing = self.ledger.list_transactions(
                portfolio_id, symbol=symbol, transaction_type=tx_type,
                since=(when - self.window).replace(microsecond=0).isoformat(),
                until=(when + self.window).replace(microsecond=0).isoformat(),
            )
        except Exception as e:
            log.error(f"Duplicate lookup failed for {symbol} in portfolio {portfolio_id}: {e}",
                      exc_info=True)
            return DuplicateVerdict(False, "unique", None, f"lookup failed: {e}")

        best = None
        for tx in existing:
            try:
                delta = abs((to_utc(tx["transaction_date"]) - when).total_seconds())
            except (TypeError, ValueError):
                continue
            if delta > self.window.total_seconds() or not self._values_match(candidate, tx):
                continue
            if best is None or delta < best[0]:
                best = (delta, tx)

        if best is None:
            return DuplicateVerdict(False, "unique", None,
                                    f"{len(existing)} same-symbol transactions in window, none match")

        delta, tx = best
        kind = "exact-duplicate" if delta <= EXACT_TIME_SECONDS else "probable-duplicate"
        reason = (f"{kind}: transaction {tx['id']} {tx_type} {tx['quantity']} {symbol} "
                  f"@ {tx['price']} on {tx['transaction_date']} "
                  f"({delta / 3600:.1f}h from candidate)")
        log.info(f"Duplicate detected in portfolio {portfolio_id}: {reason}")
        return DuplicateVerdict(True, kind, tx["id"], reason)
