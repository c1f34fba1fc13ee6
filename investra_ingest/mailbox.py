"""
Mailbox Client
===============
IMAPS connection wrapper: authenticate, list new UIDs since a watermark,
fetch raw messages, and flag/move messages once they reach a terminal
outcome. No parsing or business logic beyond MIME body extraction.
"""

import imaplib
import logging
import re
import socket
from datetime import datetime, timezone
from email import policy
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import Optional

log = logging.getLogger("investra")


class MailboxError(Exception):
    """Network or protocol failure talking to the mailbox."""


class AuthError(MailboxError):
    """Login rejected."""


class FetchError(MailboxError):
    """A single message could not be fetched."""


# ---------------------------------------------------------------------------
# Message Decoding
# ---------------------------------------------------------------------------

def _part_content(part) -> str:
    try:
        return part.get_content()
    except Exception:
        payload = part.get_payload(decode=True)
        return payload.decode("utf-8", errors="replace") if payload else ""


def extract_bodies(msg) -> tuple[str, str]:
    """Return (text_body, html_body) from an email message object.

    The first text/plain and first text/html parts win; attachments are skipped.
    """
    text_body = ""
    html_body = ""

    if msg.is_multipart():
        for part in msg.walk():
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            ct = part.get_content_type()
            if ct == "text/plain" and not text_body:
                text_body = _part_content(part)
            elif ct == "text/html" and not html_body:
                html_body = _part_content(part)
    else:
        content = _part_content(msg)
        if msg.get_content_type() == "text/html":
            html_body = content
        else:
            text_body = content

    return text_body, html_body


def _received_at(msg) -> str:
    date_str = msg.get("date", "")
    try:
        date_obj = parsedate_to_datetime(date_str)
        if date_obj.tzinfo is None:
            date_obj = date_obj.replace(tzinfo=timezone.utc)
        return date_obj.astimezone(timezone.utc).isoformat()
    except (TypeError, ValueError, IndexError):
        return datetime.now(timezone.utc).isoformat()


def message_to_raw(msg, mailbox_id: str, message_id: str, uid: Optional[int] = None,
                   size_bytes: int = 0) -> dict:
    """Build a RawMessage dict from a parsed email message."""
    text_body, html_body = extract_bodies(msg)
    _, from_address = parseaddr(str(msg.get("from", "")))
    return {
        "mailbox_id": mailbox_id,
        "message_id": message_id,
        "uid": uid,
        "header_message_id": str(msg.get("message-id", "") or "").strip(),
        "received_at": _received_at(msg),
        "subject": str(msg.get("subject", "") or ""),
        "from_address": from_address.lower(),
        "html_body": html_body,
        "text_body": text_body,
        "size_bytes": size_bytes,
    }


def load_eml_file(path, mailbox_id: str = "local") -> dict:
    """Build a RawMessage from a local .eml file, keyed by its file name."""
    eml_path = Path(path)
    data = eml_path.read_bytes()
    msg = BytesParser(policy=policy.default).parsebytes(data)
    return message_to_raw(msg, mailbox_id, f"file-{eml_path.name}", size_bytes=len(data))


# ---------------------------------------------------------------------------
# IMAP Client
# ---------------------------------------------------------------------------

_OUTCOME_KEYWORDS = {
    "success": "$InvestraSuccess",
    "duplicate": "$InvestraDuplicate",
    "parse-failed": "$InvestraParseFailed",
    "review-required": "$InvestraReviewRequired",
    "error": "$InvestraError",
}

_RE_UIDVALIDITY = re.compile(rb"UIDVALIDITY\s+(\d+)")


class MailboxClient:
    """One IMAPS session against one configured mailbox.

    mailbox_config keys: id, imap_host, imap_port, username, password,
    folder, sender_filter.
    """

    def __init__(self, mailbox_config: dict, processed_folder: str = "",
                 timeout: float = 30.0):
        self.config = mailbox_config
        self.mailbox_id = mailbox_config["id"]
        self.processed_folder = processed_folder
        self.timeout = timeout
        self.uid_validity: Optional[str] = None
        self._imap: Optional[imaplib.IMAP4_SSL] = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def connect(self) -> "MailboxClient":
        host = self.config["imap_host"]
        port = int(self.config.get("imap_port") or 993)
        folder = self.config.get("folder") or "INBOX"
        log.info(f"{self.mailbox_id}: connecting to {host}:{port}...")
        try:
            self._imap = imaplib.IMAP4_SSL(host, port, timeout=self.timeout)
        except (OSError, socket.timeout, imaplib.IMAP4.error) as e:
            raise MailboxError(f"cannot connect to {host}:{port}: {e}") from e

        try:
            self._imap.login(self.config["username"], self.config["password"])
        except imaplib.IMAP4.error as e:
            self.close()
            raise AuthError(f"login rejected for {self.config['username']}: {e}") from e

        try:
            status, _ = self._imap.select(_quote(folder))
        except (OSError, imaplib.IMAP4.error) as e:
            self.close()
            raise MailboxError(f"cannot select {folder}: {e}") from e
        if status != "OK":
            self.close()
            raise MailboxError(f"cannot select {folder}: {status}")

        self.uid_validity = self._read_uid_validity()
        log.info(f"{self.mailbox_id}: authenticated as {self.config['username']} "
                 f"(folder {folder}, UIDVALIDITY {self.uid_validity})")
        return self

    def _read_uid_validity(self) -> str:
        try:
            _, data = self._imap.response("UIDVALIDITY")
            if data and data[0]:
                return data[0].decode() if isinstance(data[0], bytes) else str(data[0])
            status, data = self._imap.status(
                _quote(self.config.get("folder") or "INBOX"), "(UIDVALIDITY)")
            match = _RE_UIDVALIDITY.search(data[0] or b"") if status == "OK" else None
            if match:
                return match.group(1).decode()
        except (OSError, imaplib.IMAP4.error) as e:
            log.warning(f"{self.mailbox_id}: could not read UIDVALIDITY: {e}")
        return "0"

    def message_id_for(self, uid: int) -> str:
        return f"{self.uid_validity}:{uid}"

    def list_since(self, watermark: int) -> list[int]:
        """UIDs strictly greater than the watermark, ascending."""
        self._require()
        criteria = ["UID", f"{int(watermark) + 1}:*"]
        sender = (self.config.get("sender_filter") or "").strip()
        if sender:
            criteria += ["FROM", _quote(sender)]
        try:
            status, data = self._imap.uid("SEARCH", None, *criteria)
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailboxError(f"search failed: {e}") from e
        if status != "OK":
            raise MailboxError(f"search failed: {status}")

        # "N:*" always matches the highest UID, even when it is below N.
        uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > watermark)
        log.info(f"{self.mailbox_id}: {len(uids)} new messages since UID {watermark}")
        return uids

    def fetch(self, uid: int) -> dict:
        """Fetch one message by UID as a RawMessage dict."""
        self._require()
        try:
            status, msg_data = self._imap.uid("FETCH", str(uid), "(BODY.PEEK[])")
        except (OSError, imaplib.IMAP4.error) as e:
            raise FetchError(f"UID {uid}: {e}") from e
        if status != "OK" or not msg_data or msg_data[0] is None \
                or not isinstance(msg_data[0], tuple):
            raise FetchError(f"UID {uid}: fetch returned {status}")

        raw = msg_data[0][1]
        msg = BytesParser(policy=policy.default).parsebytes(raw)
        return message_to_raw(msg, self.mailbox_id, self.message_id_for(uid),
                              uid=uid, size_bytes=len(raw))

    def archive(self, uid: int, outcome: str):
        """Flag the message with its outcome and move it to the processed folder."""
        self._require()
        keyword = _OUTCOME_KEYWORDS.get(outcome, "$InvestraError")
        try:
            self._imap.uid("STORE", str(uid), "+FLAGS", f"(\\Seen {keyword})")
            if not self.processed_folder:
                return
            target = _quote(self.processed_folder)
            capabilities = self._capabilities().split()
            if b"MOVE" in capabilities:
                status, _ = self._imap.uid("MOVE", str(uid), target)
            else:
                status, _ = self._imap.uid("COPY", str(uid), target)
                if status == "OK":
                    self._imap.uid("STORE", str(uid), "+FLAGS", "(\\Deleted)")
                    # Only UID EXPUNGE leaves other clients' \Deleted messages alone
                    if b"UIDPLUS" in capabilities:
                        self._imap.uid("EXPUNGE", str(uid))
                    else:
                        log.info(f"{self.mailbox_id}: UID {uid} copied and flagged \\Deleted, "
                                 f"left for the server to expunge (no UIDPLUS)")
            if status != "OK":
                raise MailboxError(f"UID {uid}: move to {self.processed_folder} returned {status}")
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailboxError(f"UID {uid}: archive failed: {e}") from e

    def _capabilities(self) -> bytes:
        caps = getattr(self._imap, "capabilities", ()) or ()
        return b" ".join(c.encode() if isinstance(c, str) else c for c in caps)

    def close(self):
        if self._imap is None:
            return
        try:
            self._imap.logout()
        except (OSError, imaplib.IMAP4.error):
            pass  # Connection already gone
        self._imap = None

    def _require(self):
        if self._imap is None:
            raise MailboxError(f"{self.mailbox_id}: not connected")


def _quote(value: str) -> str:
    if value.startswith('"'):
        return value
    return '"' + value.replace('"', '\\"') + '"'
