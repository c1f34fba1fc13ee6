"""
CLI Entry Point
================
Argument parsing and command dispatch.

Exit codes: 0 clean run, 1 run summary has errors, 2 fatal configuration.
"""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

from .config import ConfigurationError, SyncConfig, setup_logging, validate_config
from .db import add_mailbox_configuration, create_sync_request, init_db, migrate_db
from .mailbox import load_eml_file
from .oracle import AnthropicSymbolOracle, get_anthropic_api_key
from .reporting import print_summary, show_review_queue, show_runs, show_status
from .scheduler import SyncScheduler
from .sync_manager import SyncManager

log = logging.getLogger("investra")

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_CONFIG = 2


def exit_code_for(summary: dict) -> int:
    return EXIT_ERRORS if summary.get("errors") else EXIT_OK


def _build_oracle(config: SyncConfig):
    """Symbol oracle when enhancement is on and an API key is available."""
    if not config.ENHANCE_SYMBOLS:
        return None
    try:
        api_key = get_anthropic_api_key()
    except ValueError as e:
        log.warning(f"Symbol enhancement disabled: {e}")
        return None
    return AnthropicSymbolOracle(api_key=api_key, timeout=config.ORACLE_TIMEOUT_SECONDS)


def _show_config(config: SyncConfig):
    print("\n  SYNC CONFIGURATION")
    print("  " + "=" * 50)
    for name in sorted(vars(config)):
        print(f"  {name:<28} {getattr(config, name)}")
    print()


def _import_folder(manager: SyncManager, folder_path: str) -> int:
    folder = Path(folder_path)
    if not folder.exists():
        log.error(f"Folder not found: {folder_path}")
        return EXIT_CONFIG

    eml_files = sorted(folder.glob("*.eml"))
    if not eml_files:
        log.warning(f"No .eml files found in {folder_path}")
        return EXIT_OK

    log.info(f"Found {len(eml_files)} .eml files in {folder_path}")
    raws = []
    for eml_file in eml_files:
        try:
            raws.append(load_eml_file(eml_file))
        except (OSError, ValueError) as e:
            log.error(f"Error reading {eml_file.name}: {e}")
    summary = manager.import_messages(raws, mailbox_id="local")
    print_summary(summary)
    return exit_code_for(summary)


def _check_mailboxes(manager: SyncManager, conn):
    """Fail fast when no mailbox is configured or none can be reached."""
    connected = manager.verify_connections(conn)
    log.info(f"Mailbox check: {len(connected)} reachable ({', '.join(connected)})")


def _run_daemon(scheduler: SyncScheduler) -> int:
    def _handle_signal(signum, frame):
        log.info(f"Received signal {signum}, shutting down after the current message...")
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    scheduler.wait()
    scheduler.stop()
    summary = scheduler.last_summary
    return exit_code_for(summary) if summary else EXIT_OK


def main(argv=None) -> int:
    # Determine paths relative to project root (parent of this package)
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    default_log = os.path.join(project_root, "investra_ingest.log")

    parser = argparse.ArgumentParser(
        description="Investra Email Ingest - turn brokerage confirmation emails into transactions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  investra-ingest                         Run the scheduler (every INVESTRA_SYNC_INTERVAL_MINUTES)
  investra-ingest --once                  Run one sync cycle and exit (non-zero on errors)
  investra-ingest --interval 10           Run the scheduler every 10 minutes
  investra-ingest --import-folder ./emls  Process local .eml files
  investra-ingest --status                Show mailboxes, inbox backlog and outcome totals
  investra-ingest --review                Show the manual review queue
  investra-ingest --runs                  Show recent sync runs
  investra-ingest --request-sync          Queue an on-demand sync for the running daemon
  investra-ingest --add-mailbox ws --host imap.gmail.com --user me@gmail.com \\
                  --password-secret ws-imap-password --sender wealthsimple.com
        """,
    )
    parser.add_argument("--once", action="store_true",
                        help="Run a single sync cycle and exit")
    parser.add_argument("--interval", type=float,
                        help="Sync interval in minutes (default: INVESTRA_SYNC_INTERVAL_MINUTES)")
    parser.add_argument("--import-folder", type=str,
                        help="Stage and process .eml files from a local folder")
    parser.add_argument("--status", action="store_true",
                        help="Show pipeline status")
    parser.add_argument("--review", action="store_true",
                        help="Show the manual review queue")
    parser.add_argument("--runs", action="store_true",
                        help="Show recent sync runs")
    parser.add_argument("--request-sync", nargs="?", const="", metavar="MAILBOX_ID",
                        help="Queue an on-demand sync (all mailboxes, or one)")
    parser.add_argument("--add-mailbox", type=str, metavar="MAILBOX_ID",
                        help="Store a mailbox configuration (see --host/--user/--password-secret)")
    parser.add_argument("--host", type=str, help="IMAP host for --add-mailbox")
    parser.add_argument("--port", type=int, default=993, help="IMAP port (default: 993)")
    parser.add_argument("--user", type=str, help="IMAP username for --add-mailbox")
    parser.add_argument("--password-secret", type=str,
                        help="Secret name holding the password (env INVESTRA_SECRET_<NAME> or Key Vault)")
    parser.add_argument("--folder", type=str, default="INBOX", help="IMAP folder (default: INBOX)")
    parser.add_argument("--sender", type=str, default="",
                        help="Only list messages from this sender/domain")
    parser.add_argument("--show-config", action="store_true",
                        help="Show the effective sync configuration")
    parser.add_argument("--db", type=str, help="Database path (default: INVESTRA_DB_PATH)")
    parser.add_argument("--log", type=str, default=default_log,
                        help=f"Log file path (default: {default_log})")

    args = parser.parse_args(argv)
    setup_logging(args.log)

    try:
        config = SyncConfig()
        if args.db:
            config.DB_PATH = args.db
        if args.interval is not None:
            config.SYNC_INTERVAL_MINUTES = args.interval
        problems = validate_config(config)
        if problems:
            raise ConfigurationError("; ".join(problems))
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    conn = init_db(config.DB_PATH, timeout=config.DB_TIMEOUT_SECONDS)
    migrate_db(conn)
    try:
        if args.show_config:
            _show_config(config)
            return EXIT_OK
        if args.status:
            show_status(conn)
            return EXIT_OK
        if args.review:
            show_review_queue(conn)
            return EXIT_OK
        if args.runs:
            show_runs(conn)
            return EXIT_OK
        if args.request_sync is not None:
            request_id = create_sync_request(conn, args.request_sync or None)
            print(f"Queued sync request {request_id}")
            return EXIT_OK
        if args.add_mailbox:
            if not (args.host and args.user and args.password_secret):
                log.error("--add-mailbox needs --host, --user and --password-secret")
                return EXIT_CONFIG
            add_mailbox_configuration(
                conn, args.add_mailbox, args.host, args.user, args.password_secret,
                imap_port=args.port, folder=args.folder, sender_filter=args.sender,
                max_emails_per_sync=config.MAX_EMAILS_PER_SYNC)
            print(f"Stored mailbox configuration '{args.add_mailbox}'")
            return EXIT_OK

        manager = SyncManager(config.DB_PATH, config, oracle=_build_oracle(config))

        if args.import_folder:
            return _import_folder(manager, args.import_folder)

        try:
            _check_mailboxes(manager, conn)
        except ConfigurationError as e:
            log.error(f"Configuration error: {e}")
            return EXIT_CONFIG

        scheduler = SyncScheduler(manager, config.SYNC_INTERVAL_MINUTES,
                                  request_poll_seconds=config.REQUEST_POLL_SECONDS)
        if args.once or config.RUN_ONCE or not config.SCHEDULER_ENABLED:
            summary = scheduler.run_once()
            print_summary(summary)
            return exit_code_for(summary)
        return _run_daemon(scheduler)
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
