"""
Sync Manager
=============
Runs one sync cycle per configured mailbox:

  Fetching -> ParsingBatch -> Resolving -> Writing -> Archiving -> Idle

Fetched messages are staged in the Inbox first; each one then reaches
exactly one terminal outcome (success, duplicate, parse-failed,
review-required, error) and moves to Processed. A failing message never
aborts the batch: it is recorded in the run summary and either archived
with its outcome or left in the Inbox for the next cycle.

Mailboxes run concurrently in a bounded worker pool. Each worker opens its
own SQLite connection and builds its own pipeline components.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .config import ConfigurationError, SyncConfig, get_mailbox_credentials, resolve_mailbox_password
from .db import (
    OUTCOMES, archive_message, enqueue_review, get_active_mailbox_configurations,
    get_watermark, init_db, is_known_message, list_inbox, migrate_db, record_attempt,
    set_watermark, stage_message, store_sync_run, update_mailbox_status,
)
from .duplicates import DuplicateDetector
from .ledger import Ledger
from .mailbox import AuthError, MailboxClient, MailboxError
from .parser import ParseFailure, parse
from .portfolios import MappingError, MappingPolicy, PortfolioMapper
from .symbols import SymbolResolver
from .writer import DuplicateWriteError, TransactionWriter, WriteError

log = logging.getLogger("investra")


@dataclass(frozen=True)
class Pipeline:
    ledger: Ledger
    resolver: SymbolResolver
    detector: DuplicateDetector
    mapper: PortfolioMapper
    writer: TransactionWriter


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_summary(mailbox_id: str, trigger: str) -> dict:
    return {
        "mailbox_id": mailbox_id,
        "trigger": trigger,
        "started_at": _now().isoformat(),
        "finished_at": None,
        "duration_ms": 0,
        "total_emails_synced": 0,
        "configurations_synced": 0,
        "configurations_total": 0,
        "outcomes": {tag: 0 for tag in OUTCOMES},
        "errors": [],
        "warnings": [],
    }


def _finish_summary(summary: dict) -> dict:
    finished = _now()
    summary["finished_at"] = finished.isoformat()
    started = datetime.fromisoformat(summary["started_at"])
    summary["duration_ms"] = int((finished - started).total_seconds() * 1000)
    return summary


class SyncManager:
    """Orchestrates fetch -> parse -> resolve -> dedupe -> map -> write -> archive."""

    def __init__(self, db_path: str, config: Optional[SyncConfig] = None, oracle=None,
                 mailbox_factory=MailboxClient, sleep=time.sleep):
        self.db_path = db_path
        self.config = config or SyncConfig()
        self.oracle = oracle
        self.mailbox_factory = mailbox_factory
        self._sleep = sleep
        self._shutdown = threading.Event()
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._status: dict[str, dict] = {}

    # -----------------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------------

    def request_shutdown(self):
        """Finish the current message, then stop before the next fetch."""
        log.info("Sync manager: shutdown requested")
        self._shutdown.set()

    def reset_shutdown(self):
        """Clear a previous shutdown request so a restarted scheduler can sync again."""
        self._shutdown.clear()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def connect_db(self):
        conn = init_db(self.db_path, timeout=self.config.DB_TIMEOUT_SECONDS)
        migrate_db(conn)
        return conn

    def build_pipeline(self, conn) -> Pipeline:
        ledger = Ledger(conn)
        return Pipeline(
            ledger=ledger,
            resolver=SymbolResolver(oracle=self.oracle, enhance=self.config.ENHANCE_SYMBOLS),
            detector=DuplicateDetector(ledger, self.config.DUPLICATE_WINDOW_HOURS,
                                       self.config.DUPLICATE_TOLERANCE),
            mapper=PortfolioMapper(ledger, self.config.PORTFOLIO_OWNER,
                                   self.config.DEFAULT_CURRENCY),
            writer=TransactionWriter(ledger),
        )

    def _set_state(self, mailbox_id: str, state: str, **extra):
        with self._lock:
            entry = self._status.setdefault(mailbox_id, {"state": "Idle"})
            entry["state"] = state
            entry["updated_at"] = _now().isoformat()
            entry.update(extra)

    def status(self) -> dict:
        """Snapshot of per-mailbox state for status reporting."""
        with self._lock:
            return {
                "shutdown_requested": self._shutdown.is_set(),
                "active": sorted(self._active),
                "mailboxes": {k: dict(v) for k, v in self._status.items()},
            }

    def _with_retry(self, func, what: str):
        """Call func, retrying transient mailbox errors with exponential backoff."""
        attempts = max(1, self.config.MAX_RETRIES)
        for attempt in range(attempts):
            try:
                return func()
            except AuthError:
                raise
            except (MailboxError, OSError) as e:
                if attempt + 1 >= attempts or self._shutdown.is_set():
                    if isinstance(e, MailboxError):
                        raise
                    raise MailboxError(f"{what}: {e}") from e
                wait = self.config.RETRY_BACKOFF_SECONDS * (2 ** attempt)
                log.warning(f"{what} failed (attempt {attempt + 1}), retrying in {wait:.0f}s: {e}")
                self._sleep(wait)

    def mailbox_configurations(self, conn) -> list[dict]:
        """Active stored configurations, else the default mailbox from the environment.

        Raises ConfigurationError when neither exists.
        """
        configs = get_active_mailbox_configurations(conn)
        if configs:
            return configs
        return [get_mailbox_credentials()]

    def verify_connections(self, conn) -> list[str]:
        """Open and close every active mailbox once, without retries.

        Returns the ids that connected. Raises ConfigurationError when no
        mailbox connection can be established at all.
        """
        connected, failures = [], []
        for mailbox_config in self.mailbox_configurations(conn):
            mailbox_id = mailbox_config["id"]
            try:
                client = self.mailbox_factory(resolve_mailbox_password(mailbox_config),
                                              processed_folder=self.config.PROCESSED_FOLDER,
                                              timeout=self.config.IMAP_TIMEOUT_SECONDS)
                client.connect()
            except (ConfigurationError, MailboxError) as e:
                failures.append(f"{mailbox_id}: {e}")
                log.error(f"{mailbox_id}: startup connection failed: {e}")
                continue
            client.close()
            connected.append(mailbox_id)

        if not connected:
            raise ConfigurationError(
                "no mailbox connection could be established: " + "; ".join(failures))
        return connected

    # -----------------------------------------------------------------------
    # Cycle
    # -----------------------------------------------------------------------

    def sync_all_configurations(self, trigger: str = "scheduled",
                                mailbox_id: Optional[str] = None) -> dict:
        """One cycle over every active mailbox (or just mailbox_id). Always returns a summary."""
        summary = new_summary(mailbox_id or "all", trigger)
        conn = self.connect_db()
        try:
            try:
                configs = self.mailbox_configurations(conn)
            except ConfigurationError as e:
                summary["errors"].append(str(e))
                log.error(f"Sync aborted: {e}")
                return _finish_summary(summary)

            if mailbox_id:
                configs = [c for c in configs if c["id"] == mailbox_id]
                if not configs:
                    summary["errors"].append(f"unknown or inactive mailbox: {mailbox_id}")
            summary["configurations_total"] = len(configs)
            log.info(f"Sync cycle ({trigger}): {len(configs)} mailbox configuration(s)")

            if configs:
                workers = max(1, min(self.config.MAX_WORKERS, len(configs)))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = {pool.submit(self.sync_configuration, cfg): cfg for cfg in configs}
                    for future in as_completed(futures):
                        cfg = futures[future]
                        try:
                            self._merge(summary, future.result())
                        except Exception as e:
                            summary["errors"].append(f"{cfg['id']}: {e}")
                            log.error(f"Mailbox {cfg['id']} sync crashed: {e}", exc_info=True)

            _finish_summary(summary)
            try:
                store_sync_run(conn, summary)
            except Exception as e:
                summary["warnings"].append(f"could not store sync run: {e}")
                log.error(f"Could not store sync run: {e}", exc_info=True)
        finally:
            conn.close()

        log.info(
            f"Sync cycle done in {summary['duration_ms']}ms: "
            f"{summary['total_emails_synced']} new emails, "
            f"{summary['configurations_synced']}/{summary['configurations_total']} mailboxes, "
            f"{len(summary['errors'])} error(s)"
        )
        return summary

    @staticmethod
    def _merge(summary: dict, result: dict):
        summary["total_emails_synced"] += result["total_emails_synced"]
        if result.get("synced"):
            summary["configurations_synced"] += 1
        for tag, count in result["outcomes"].items():
            summary["outcomes"][tag] = summary["outcomes"].get(tag, 0) + count
        summary["errors"].extend(f"{result['mailbox_id']}: {e}" for e in result["errors"])
        summary["warnings"].extend(f"{result['mailbox_id']}: {w}" for w in result["warnings"])

    def sync_configuration(self, mailbox_config: dict) -> dict:
        """Fetch, stage and process one mailbox. Runs on a worker thread."""
        mailbox_id = mailbox_config["id"]
        result = {
            "mailbox_id": mailbox_id,
            "total_emails_synced": 0,
            "outcomes": {tag: 0 for tag in OUTCOMES},
            "errors": [],
            "warnings": [],
            "synced": False,
        }

        with self._lock:
            if mailbox_id in self._active:
                result["warnings"].append("sync already in progress, skipped")
                log.warning(f"{mailbox_id}: sync already in progress, skipping")
                return result
            self._active.add(mailbox_id)

        conn = None
        try:
            conn = self.connect_db()
            self._set_state(mailbox_id, "Fetching")
            update_mailbox_status(conn, mailbox_id, "syncing")

            try:
                resolved_config = resolve_mailbox_password(mailbox_config)
            except ConfigurationError as e:
                result["errors"].append(str(e))
                return result

            client = self.mailbox_factory(resolved_config,
                                          processed_folder=self.config.PROCESSED_FOLDER,
                                          timeout=self.config.IMAP_TIMEOUT_SECONDS)
            try:
                self._with_retry(client.connect, f"{mailbox_id}: connect")
            except MailboxError as e:
                result["errors"].append(f"connect failed: {e}")
                log.error(f"{mailbox_id}: connect failed: {e}")
                return result

            try:
                self._fetch_new(conn, client, resolved_config, result)
                self.process_inbox(conn, mailbox_id, result, client=client)
            finally:
                client.close()
            result["synced"] = True

        except Exception as e:
            result["errors"].append(f"unexpected: {e}")
            log.error(f"{mailbox_id}: sync failed: {e}", exc_info=True)
        finally:
            with self._lock:
                self._active.discard(mailbox_id)
            self._set_state(mailbox_id, "Idle", last_sync_at=_now().isoformat(),
                            last_errors=list(result["errors"]),
                            emails_synced=result["total_emails_synced"])
            if conn is not None:
                try:
                    update_mailbox_status(
                        conn, mailbox_id, "error" if result["errors"] else "idle",
                        "; ".join(result["errors"])[:1000] or None,
                        result["total_emails_synced"])
                finally:
                    conn.close()
        return result

    def _fetch_new(self, conn, client, mailbox_config: dict, result: dict):
        """Stage messages above the watermark into the Inbox.

        UIDs already staged or processed are not fetched again and do not
        count toward the per-sync limit. The watermark only advances past
        UIDs with no unfetched UID below them.
        """
        mailbox_id = mailbox_config["id"]
        uid_validity = getattr(client, "uid_validity", None)
        watermark = get_watermark(conn, mailbox_id, uid_validity)
        uids = self._with_retry(lambda: client.list_since(watermark), f"{mailbox_id}: list")

        unseen = [uid for uid in uids
                  if not is_known_message(conn, mailbox_id, client.message_id_for(uid))]
        limit = mailbox_config.get("max_emails_per_sync") or self.config.MAX_EMAILS_PER_SYNC
        if len(unseen) > limit:
            log.info(f"{mailbox_id}: {len(unseen)} unseen messages, fetching first {limit}")
        to_fetch = set(unseen[:limit])
        deferred = set(unseen[limit:])

        new_watermark = watermark
        blocked = False
        for uid in uids:
            if uid in deferred:
                break
            if uid not in to_fetch:
                # Already staged or processed
                if not blocked:
                    new_watermark = uid
                continue
            if self._shutdown.is_set():
                result["warnings"].append("shutdown requested during fetch")
                break
            try:
                raw = self._with_retry(lambda: client.fetch(uid), f"{mailbox_id}: fetch UID {uid}")
            except MailboxError as e:
                result["errors"].append(f"fetch UID {uid} failed: {e}")
                log.error(f"{mailbox_id}: fetch UID {uid} failed: {e}")
                blocked = True
                continue
            if stage_message(conn, raw):
                result["total_emails_synced"] += 1
            if not blocked:
                new_watermark = uid

        set_watermark(conn, mailbox_id, new_watermark, uid_validity)
        log.info(f"{mailbox_id}: staged {result['total_emails_synced']} message(s), "
                 f"watermark {watermark} -> {new_watermark}")

    def process_inbox(self, conn, mailbox_id: str, result: dict, client=None,
                      pipeline: Optional[Pipeline] = None):
        """Process every Inbox message of one mailbox in listing order."""
        pipeline = pipeline or self.build_pipeline(conn)
        messages = list_inbox(conn, mailbox_id)
        for index, message in enumerate(messages):
            if self._shutdown.is_set():
                result["warnings"].append(
                    f"shutdown requested, {len(messages) - index} message(s) left in inbox")
                break

            outcome = self.process_message(conn, message, pipeline)
            if outcome.get("error"):
                result["errors"].append(outcome["error"])
            tag = outcome.get("outcome")
            if tag is None:
                continue
            result["outcomes"][tag] = result["outcomes"].get(tag, 0) + 1

            if client is not None and message.get("uid"):
                self._set_state(mailbox_id, "Archiving")
                try:
                    client.archive(message["uid"], tag)
                except MailboxError as e:
                    result["warnings"].append(f"mailbox archive of {message['message_id']} failed: {e}")
                    log.warning(f"{mailbox_id}: archive of UID {message['uid']} failed: {e}")

    # -----------------------------------------------------------------------
    # Per-message routing
    # -----------------------------------------------------------------------

    def _finish(self, conn, message: dict, outcome: str, detail: str,
                transaction_id: Optional[int] = None, candidate: Optional[dict] = None,
                error: Optional[str] = None) -> dict:
        archive_message(conn, message, outcome, detail, transaction_id=transaction_id,
                        parse_method=candidate.get("parse_method") if candidate else None,
                        confidence=candidate.get("confidence") if candidate else None)
        log.info(f"{message['mailbox_id']}: {message['message_id']} -> {outcome} ({detail})")
        return {"outcome": outcome, "detail": detail, "transaction_id": transaction_id,
                "error": error}

    def _review(self, conn, message: dict, outcome: str, reason: str, candidate: dict,
                resolved=None, matched_transaction_id: Optional[int] = None) -> dict:
        enqueue_review(conn, message["mailbox_id"], message["message_id"], reason,
                       candidate=candidate,
                       resolved_symbol=resolved.normalized_symbol if resolved else None,
                       matched_transaction_id=matched_transaction_id)
        return self._finish(conn, message, outcome, reason, candidate=candidate)

    def _leave_in_inbox(self, conn, message: dict, error: str) -> dict:
        attempts = record_attempt(conn, message["mailbox_id"], message["message_id"], error)
        error = f"{message['message_id']}: {error}"
        if attempts >= self.config.MAX_MESSAGE_ATTEMPTS:
            log.error(f"{message['mailbox_id']}: giving up after {attempts} attempts: {error}")
            return self._finish(conn, message, "error",
                                f"gave up after {attempts} attempts: {error}", error=error)
        log.warning(f"{message['mailbox_id']}: left in inbox (attempt {attempts}): {error}")
        return {"outcome": None, "detail": "left in inbox", "transaction_id": None,
                "error": error}

    def process_message(self, conn, message: dict, pipeline: Optional[Pipeline] = None) -> dict:
        """Route one Inbox message to its terminal outcome.

        Returns {"outcome", "detail", "transaction_id", "error"}; outcome is
        None when the message stays in the Inbox for another attempt.
        """
        pipeline = pipeline or self.build_pipeline(conn)
        mailbox_id = message["mailbox_id"]
        cfg = self.config
        try:
            self._set_state(mailbox_id, "ParsingBatch")
            existing = pipeline.ledger.find_transaction_by_source(message["message_id"])
            if existing is not None:
                return self._finish(conn, message, "success", "transaction already written",
                                    transaction_id=existing["id"])

            try:
                candidate = parse(message)
            except ParseFailure as e:
                return self._finish(conn, message, "parse-failed", str(e))

            self._set_state(mailbox_id, "Resolving")
            resolved = pipeline.resolver.resolve(candidate["symbol_raw"], candidate)

            if candidate["confidence"] < cfg.MIN_AUTO_ACCEPT_CONFIDENCE:
                return self._review(
                    conn, message, "review-required",
                    f"parse confidence {candidate['confidence']:.2f} below "
                    f"{cfg.MIN_AUTO_ACCEPT_CONFIDENCE:.2f}", candidate, resolved)
            if resolved.needs_review or resolved.confidence < cfg.MIN_SYMBOL_CONFIDENCE:
                return self._review(
                    conn, message, "review-required",
                    f"symbol '{resolved.symbol_raw}' resolved to {resolved.normalized_symbol} "
                    f"via {resolved.source} ({resolved.confidence:.2f})", candidate, resolved)
            if not candidate.get("account_type"):
                return self._review(conn, message, "review-required",
                                    "no account type in message", candidate, resolved)

            existing_mapping = pipeline.mapper.lookup(candidate["account_type"])
            verdict = pipeline.detector.check(
                candidate, resolved,
                existing_mapping.portfolio_id if existing_mapping else None)
            if verdict.is_duplicate:
                return self._review(conn, message, "duplicate", verdict.reason, candidate,
                                    resolved, verdict.matched_transaction_id)

            self._set_state(mailbox_id, "Writing")
            mapping = pipeline.mapper.map_or_create(
                candidate["account_type"], MappingPolicy(cfg.CREATE_MISSING_PORTFOLIOS))
            tx = pipeline.writer.create(mapping.portfolio_id, resolved, candidate)
            return self._finish(
                conn, message, "success",
                f"{tx['transaction_type']} {tx['quantity']} {tx['symbol']} @ {tx['price']} "
                f"-> {mapping.portfolio_name}", transaction_id=tx["id"], candidate=candidate)

        except DuplicateWriteError as e:
            return self._finish(conn, message, "duplicate", str(e))
        except (MappingError, WriteError) as e:
            return self._leave_in_inbox(conn, message, str(e))
        except Exception as e:
            log.error(f"{mailbox_id}: unexpected error on {message['message_id']}: {e}",
                      exc_info=True)
            return self._leave_in_inbox(conn, message, f"unexpected: {e}")

    # -----------------------------------------------------------------------
    # Local import & on-demand requests
    # -----------------------------------------------------------------------

    def import_messages(self, raws: list[dict], mailbox_id: str = "local",
                        trigger: str = "import") -> dict:
        """Stage and process already-fetched RawMessages (e.g. local .eml files)."""
        summary = new_summary(mailbox_id, trigger)
        summary["configurations_total"] = 1
        conn = self.connect_db()
        try:
            for raw in raws:
                raw = dict(raw, mailbox_id=mailbox_id)
                if stage_message(conn, raw):
                    summary["total_emails_synced"] += 1
            result = {"mailbox_id": mailbox_id, "total_emails_synced": 0,
                      "outcomes": {tag: 0 for tag in OUTCOMES},
                      "errors": [], "warnings": [], "synced": True}
            self.process_inbox(conn, mailbox_id, result)
            self._merge(summary, result)
            _finish_summary(summary)
            store_sync_run(conn, summary)
        finally:
            conn.close()
        return summary

    def process_sync_requests(self) -> int:
        """Run a sync for each pending on-demand request. Returns requests handled."""
        conn = self.connect_db()
        handled = 0
        try:
            ledger = Ledger(conn)
            for request in ledger.list_pending_sync_requests():
                if self._shutdown.is_set():
                    break
                if not ledger.claim_sync_request(request["id"]):
                    continue
                log.info(f"Processing sync request {request['id']} "
                         f"({request['mailbox_id'] or 'all mailboxes'})")
                try:
                    summary = self.sync_all_configurations(
                        trigger=f"request:{request['id']}", mailbox_id=request["mailbox_id"])
                    ledger.mark_sync_request_complete(
                        request["id"], success=not summary["errors"],
                        result={k: summary[k] for k in ("total_emails_synced", "outcomes",
                                                        "errors", "duration_ms")})
                except Exception as e:
                    log.error(f"Sync request {request['id']} failed: {e}", exc_info=True)
                    ledger.mark_sync_request_complete(request["id"], success=False,
                                                      result={"errors": [str(e)]})
                handled += 1
        finally:
            conn.close()
        return handled
