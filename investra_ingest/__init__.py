"""
Investra Email Ingest
======================
Pulls brokerage confirmation emails over IMAPS and turns them into
portfolio transactions: per-sender parsing, symbol resolution, duplicate
detection, portfolio mapping, idempotent writes.

Usage:
    python -m investra_ingest --once
    python -m investra_ingest --status
    python -m investra_ingest --import-folder ./emls
"""

# Public API re-exports for programmatic access
from .config import (
    ConfigurationError,
    SyncConfig,
    get_mailbox_credentials,
    setup_logging,
    validate_config,
)
from .db import (
    init_db,
    migrate_db,
    stage_message,
    archive_message,
    list_inbox,
    enqueue_review,
    store_sync_run,
    create_sync_request,
    add_mailbox_configuration,
)
from .ledger import Ledger
from .mailbox import (
    MailboxClient,
    MailboxError,
    AuthError,
    FetchError,
    load_eml_file,
)
from .parser import (
    GRAMMARS,
    Grammar,
    ParseFailure,
    grammar_for_sender,
    html_to_text,
    parse,
    parse_amount,
)
from .symbols import (
    ResolvedSymbol,
    SymbolResolver,
    match_instrument,
    occ_symbol,
)
from .oracle import (
    AnthropicSymbolOracle,
    get_anthropic_api_key,
)
from .duplicates import (
    DuplicateDetector,
    DuplicateVerdict,
)
from .portfolios import (
    ACCOUNT_TYPE_MAPPINGS,
    MappingError,
    MappingPolicy,
    PortfolioMapper,
    PortfolioMapping,
    normalize_account_type,
)
from .writer import (
    DuplicateWriteError,
    TransactionWriter,
    WriteError,
)
from .sync_manager import SyncManager
from .scheduler import SyncScheduler

__all__ = [
    # Configuration
    "ConfigurationError", "SyncConfig", "get_mailbox_credentials",
    "setup_logging", "validate_config",
    # Message store
    "init_db", "migrate_db", "stage_message", "archive_message", "list_inbox",
    "enqueue_review", "store_sync_run", "create_sync_request",
    "add_mailbox_configuration",
    # Ledger
    "Ledger",
    # Mailbox
    "MailboxClient", "MailboxError", "AuthError", "FetchError", "load_eml_file",
    # Parser
    "GRAMMARS", "Grammar", "ParseFailure", "grammar_for_sender", "html_to_text",
    "parse", "parse_amount",
    # Symbols
    "ResolvedSymbol", "SymbolResolver", "match_instrument", "occ_symbol",
    "AnthropicSymbolOracle", "get_anthropic_api_key",
    # Duplicates
    "DuplicateDetector", "DuplicateVerdict",
    # Portfolios
    "ACCOUNT_TYPE_MAPPINGS", "MappingError", "MappingPolicy", "PortfolioMapper",
    "PortfolioMapping", "normalize_account_type",
    # Writer
    "DuplicateWriteError", "TransactionWriter", "WriteError",
    # Orchestration
    "SyncManager", "SyncScheduler",
]
