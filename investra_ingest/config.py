"""
Configuration & Credentials
============================
Environment-driven settings for the ingestion pipeline, secret lookup
(.env file, environment variables, Azure Key Vault) and logging setup.

All settings are read from INVESTRA_* environment variables, with a .env
file in the working directory or project root loaded first.
"""

import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

log = logging.getLogger("investra")

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ConfigurationError(Exception):
    """Fatal misconfiguration: missing credentials, unusable paths, bad values."""


# ---------------------------------------------------------------------------
# Environment / Secrets
# ---------------------------------------------------------------------------

_env_loaded = False


def load_env():
    """Load the first .env file found (CWD, then project root) into os.environ.

    Existing environment variables win over .env values.
    """
    global _env_loaded
    if _env_loaded:
        return
    for search_dir in [os.getcwd(), _PROJECT_ROOT]:
        env_path = os.path.join(search_dir, ".env")
        if os.path.exists(env_path):
            load_dotenv(env_path, override=False)
            break
    _env_loaded = True


def get_secret(env_name: str, vault_secret: Optional[str] = None) -> Optional[str]:
    """Look up a secret from env vars / .env, then Azure Key Vault.

    Lookup order:
      1. Environment variable `env_name` (or .env file)
      2. Azure Key Vault secret `vault_secret` (requires AZURE_KEYVAULT_URL)

    Returns None when neither source has it.
    """
    load_env()
    value = os.environ.get(env_name)
    if value:
        return value.strip()

    vault_url = os.environ.get("AZURE_KEYVAULT_URL")
    if vault_url and vault_secret:
        try:
            from azure.identity import DefaultAzureCredential
            from azure.keyvault.secrets import SecretClient
            credential = DefaultAzureCredential()
            client = SecretClient(vault_url=vault_url, credential=credential)
            secret = client.get_secret(vault_secret)
            if secret.value:
                return secret.value.strip().replace("\xa0", "")
        except Exception as e:
            log.error(f"Azure Key Vault error ({vault_secret}): {e}")

    return None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Sync Configuration
# ---------------------------------------------------------------------------

class SyncConfig:
    """Pipeline settings. Attribute defaults apply when the env var is unset."""

    def __init__(self):
        load_env()
        # Scheduling
        self.SYNC_INTERVAL_MINUTES = _env_int("INVESTRA_SYNC_INTERVAL_MINUTES", 5)
        self.MAX_EMAILS_PER_SYNC = _env_int("INVESTRA_MAX_EMAILS_PER_SYNC", 50)
        self.SCHEDULER_ENABLED = _env_bool("INVESTRA_SCHEDULER_ENABLED", True)
        self.RUN_ONCE = _env_bool("INVESTRA_RUN_ONCE", False)
        self.MAX_WORKERS = _env_int("INVESTRA_MAX_WORKERS", 4)
        self.REQUEST_POLL_SECONDS = _env_int("INVESTRA_REQUEST_POLL_SECONDS", 10)

        # Routing thresholds
        self.MIN_AUTO_ACCEPT_CONFIDENCE = _env_float("INVESTRA_MIN_AUTO_ACCEPT_CONFIDENCE", 0.7)
        self.MIN_SYMBOL_CONFIDENCE = _env_float("INVESTRA_MIN_SYMBOL_CONFIDENCE", 0.5)
        self.DUPLICATE_WINDOW_HOURS = _env_float("INVESTRA_DUPLICATE_WINDOW_HOURS", 24.0)
        self.DUPLICATE_TOLERANCE = _env_float("INVESTRA_DUPLICATE_TOLERANCE", 0.01)

        # Portfolio mapping
        self.CREATE_MISSING_PORTFOLIOS = _env_bool("INVESTRA_CREATE_MISSING_PORTFOLIOS", True)
        self.DEFAULT_CURRENCY = os.environ.get("INVESTRA_DEFAULT_CURRENCY", "CAD").upper()
        self.PORTFOLIO_OWNER = os.environ.get("INVESTRA_PORTFOLIO_OWNER", "default")

        # Symbol oracle
        self.ENHANCE_SYMBOLS = _env_bool("INVESTRA_ENHANCE_SYMBOLS", True)
        self.ORACLE_TIMEOUT_SECONDS = _env_float("INVESTRA_ORACLE_TIMEOUT_SECONDS", 3.0)

        # I/O
        self.DB_TIMEOUT_SECONDS = _env_float("INVESTRA_DB_TIMEOUT_SECONDS", 30.0)
        self.IMAP_TIMEOUT_SECONDS = _env_float("INVESTRA_IMAP_TIMEOUT_SECONDS", 30.0)
        self.MAX_RETRIES = _env_int("INVESTRA_MAX_RETRIES", 3)
        self.RETRY_BACKOFF_SECONDS = _env_float("INVESTRA_RETRY_BACKOFF_SECONDS", 2.0)
        self.MAX_MESSAGE_ATTEMPTS = _env_int("INVESTRA_MAX_MESSAGE_ATTEMPTS", 5)
        self.PROCESSED_FOLDER = os.environ.get("INVESTRA_PROCESSED_FOLDER", "Investra/Processed")

        self.DB_PATH = os.environ.get(
            "INVESTRA_DB_PATH", os.path.join(_PROJECT_ROOT, "investra_ingest.db"))


def validate_config(config: SyncConfig) -> list[str]:
    """Return a list of configuration problems (empty when usable)."""
    problems = []
    if config.SYNC_INTERVAL_MINUTES < 1:
        problems.append("INVESTRA_SYNC_INTERVAL_MINUTES must be >= 1")
    if config.MAX_EMAILS_PER_SYNC < 1:
        problems.append("INVESTRA_MAX_EMAILS_PER_SYNC must be >= 1")
    if config.MAX_WORKERS < 1:
        problems.append("INVESTRA_MAX_WORKERS must be >= 1")
    for name in ("MIN_AUTO_ACCEPT_CONFIDENCE", "MIN_SYMBOL_CONFIDENCE"):
        value = getattr(config, name)
        if not 0.0 <= value <= 1.0:
            problems.append(f"INVESTRA_{name} must be between 0 and 1")
    if config.DUPLICATE_WINDOW_HOURS < 0 or config.DUPLICATE_TOLERANCE < 0:
        problems.append("duplicate window and tolerance must be non-negative")
    if config.MAX_MESSAGE_ATTEMPTS < 1:
        problems.append("INVESTRA_MAX_MESSAGE_ATTEMPTS must be >= 1")
    db_dir = os.path.dirname(os.path.abspath(config.DB_PATH))
    if not os.path.isdir(db_dir):
        problems.append(f"database directory does not exist: {db_dir}")
    return problems


# ---------------------------------------------------------------------------
# Mailbox Credentials
# ---------------------------------------------------------------------------

def get_mailbox_credentials() -> dict:
    """Default mailbox settings from env vars, .env file, or Azure Key Vault.

    Raises ConfigurationError when the host, user or password is missing.
    """
    load_env()
    host = os.environ.get("INVESTRA_IMAP_HOST", "imap.gmail.com")
    user = get_secret("INVESTRA_IMAP_USER",
                      os.environ.get("INVESTRA_IMAP_USER_SECRET", "investra-imap-user"))
    password = get_secret("INVESTRA_IMAP_PASSWORD",
                          os.environ.get("INVESTRA_IMAP_PASSWORD_SECRET", "investra-imap-password"))

    if not (host and user and password):
        raise ConfigurationError(
            "No mailbox credentials found. Set INVESTRA_IMAP_USER and "
            "INVESTRA_IMAP_PASSWORD in environment variables or a .env file, "
            "or configure Azure Key Vault."
        )

    return {
        "id": os.environ.get("INVESTRA_IMAP_MAILBOX_ID", "default"),
        "name": "default",
        "imap_host": host,
        "imap_port": _env_int("INVESTRA_IMAP_PORT", 993),
        "username": user,
        "password": password,
        "folder": os.environ.get("INVESTRA_IMAP_FOLDER", "INBOX"),
        "sender_filter": os.environ.get("INVESTRA_IMAP_SENDER_FILTER", ""),
        "max_emails_per_sync": _env_int("INVESTRA_MAX_EMAILS_PER_SYNC", 50),
    }


def resolve_mailbox_password(mailbox_config: dict) -> dict:
    """Fill in `password` for a stored mailbox configuration.

    Stored configurations carry only the name of the secret, never the
    password itself. Raises ConfigurationError if the secret is missing.
    """
    if mailbox_config.get("password"):
        return mailbox_config
    secret_name = mailbox_config.get("password_secret") or ""
    env_name = "INVESTRA_SECRET_" + secret_name.upper().replace("-", "_")
    password = get_secret(env_name, secret_name or None)
    if not password:
        raise ConfigurationError(
            f"No password for mailbox {mailbox_config.get('id')}: "
            f"set {env_name} or Key Vault secret '{secret_name}'"
        )
    resolved = dict(mailbox_config)
    resolved["password"] = password
    return resolved


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(log_path: str, level: int = logging.INFO):
    """Configure dual file + console logging."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_path, encoding="utf-8"),
            logging.StreamHandler(
                open(sys.stdout.fileno(), mode="w", encoding="utf-8", closefd=False)
            ),
        ],
    )
