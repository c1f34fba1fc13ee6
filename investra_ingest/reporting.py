"""
Reporting & Display
====================
Console output for pipeline status, the manual review queue, and sync run
history.
"""

import json
import logging
import sqlite3

from .db import count_outcomes, get_active_mailbox_configurations, list_review_queue, list_sync_runs

log = logging.getLogger("investra")


def print_summary(summary: dict):
    """Print one SyncRunSummary."""
    print("\n" + "=" * 80)
    print(f"  SYNC RUN  |  {summary['mailbox_id']}  |  trigger: {summary.get('trigger') or '-'}")
    print("=" * 80)
    print(f"  Started:        {summary['started_at']}")
    print(f"  Finished:       {summary['finished_at']}  ({summary['duration_ms']} ms)")
    print(f"  New emails:     {summary['total_emails_synced']}")
    print(f"  Mailboxes:      {summary['configurations_synced']}/{summary['configurations_total']}")
    outcomes = "  ".join(f"{tag}={count}" for tag, count in summary["outcomes"].items())
    print(f"  Outcomes:       {outcomes}")
    if summary["warnings"]:
        print(f"\n  Warnings ({len(summary['warnings'])}):")
        for warning in summary["warnings"]:
            print(f"    - {warning}")
    if summary["errors"]:
        print(f"\n  Errors ({len(summary['errors'])}):")
        for error in summary["errors"]:
            print(f"    - {error}")
    print()


def show_status(conn: sqlite3.Connection):
    """Print mailbox configurations, Inbox backlog and outcome totals."""
    print("\n" + "=" * 100)
    print("  MAILBOXES")
    print("=" * 100)
    configs = get_active_mailbox_configurations(conn)
    if configs:
        print(f"  {'ID':<16} {'Host':<24} {'User':<28} {'Status':<8} {'Synced':>7}  Last sync")
        print("  " + "-" * 96)
        for c in configs:
            print(f"  {c['id']:<16} {c['imap_host']:<24} {c['username']:<28} "
                  f"{c['sync_status'] or '-':<8} {c['emails_synced'] or 0:>7}  "
                  f"{c['last_sync_at'] or 'never'}")
            if c["last_error"]:
                print(f"      last error: {c['last_error'][:80]}")
    else:
        print("  No stored configurations (the default mailbox comes from INVESTRA_IMAP_* settings)")

    backlog = conn.execute("""
        SELECT mailbox_id, COUNT(*) AS n, MAX(attempts) AS max_attempts
        FROM inbox GROUP BY mailbox_id ORDER BY mailbox_id
    """).fetchall()
    print("\n  INBOX BACKLOG")
    print("  " + "-" * 40)
    if backlog:
        for row in backlog:
            print(f"  {row['mailbox_id']:<20} {row['n']:>5} message(s)  "
                  f"(max attempts {row['max_attempts']})")
    else:
        print("  Inbox is empty")

    print("\n  OUTCOMES (all time)")
    print("  " + "-" * 40)
    totals = count_outcomes(conn)
    for tag in ("success", "duplicate", "parse-failed", "review-required", "error"):
        print(f"  {tag:<18} {totals.get(tag, 0):>6}")

    row = conn.execute("SELECT COUNT(*) FROM transactions").fetchone()
    pending = conn.execute(
        "SELECT COUNT(*) FROM sync_requests WHERE status IN ('pending', 'processing')"
    ).fetchone()
    print(f"\n  Transactions in ledger: {row[0]}")
    print(f"  Pending sync requests:  {pending[0]}\n")


def show_review_queue(conn: sqlite3.Connection, limit: int = 50):
    """Print pending manual-review items."""
    items = list_review_queue(conn, limit=limit)
    print("\n" + "=" * 110)
    print(f"  MANUAL REVIEW QUEUE  |  {len(items)} pending")
    print("=" * 110)
    if not items:
        print("  Nothing to review.\n")
        return

    print(f"  {'#':>4} {'Message':<28} {'Symbol':<12} {'Type':<8} {'Qty':>10} {'Price':>10}  Reason")
    print("  " + "-" * 106)
    for item in items:
        candidate = json.loads(item["candidate_json"]) if item["candidate_json"] else {}
        qty = candidate.get("quantity")
        price = candidate.get("price")
        qty_str = f"{qty:,.4g}" if isinstance(qty, (int, float)) else "-"
        price_str = f"{price:,.2f}" if isinstance(price, (int, float)) else "-"
        symbol = item["resolved_symbol"] or candidate.get("symbol_raw") or "-"
        print(f"  {item['id']:>4} {item['message_id'][:28]:<28} {symbol[:12]:<12} "
              f"{candidate.get('transaction_type', '-'):<8} {qty_str:>10} {price_str:>10}  "
              f"{item['reason'][:60]}")
    print()


def show_runs(conn: sqlite3.Connection, limit: int = 20):
    """Print recent sync runs, newest first."""
    runs = list_sync_runs(conn, limit=limit)
    print("\n" + "=" * 100)
    print("  SYNC RUN HISTORY")
    print("=" * 100)
    if not runs:
        print("  No sync runs recorded.\n")
        return

    print(f"  {'Started':<27} {'Trigger':<22} {'Mailbox':<10} {'New':>4} {'OK':>4} "
          f"{'Dup':>4} {'Fail':>4} {'Rev':>4} {'Err':>4} {'ms':>7}")
    print("  " + "-" * 96)
    for run in runs:
        o = run["outcomes"]
        print(f"  {run['started_at'][:26]:<27} {(run['trigger'] or '-')[:22]:<22} "
              f"{(run['mailbox_id'] or '-')[:10]:<10} {run['total_emails_synced']:>4} "
              f"{o.get('success', 0):>4} {o.get('duplicate', 0):>4} "
              f"{o.get('parse-failed', 0):>4} {o.get('review-required', 0):>4} "
              f"{len(run['errors']):>4} {run['duration_ms'] or 0:>7}")
    print()
