"""
Portfolio Mapper
=================
Maps a brokerage account type ("TFSA", "Tax-Free Savings Account",
"Non-registered") to a portfolio in the ledger, creating it when policy
allows. Creation is create-if-absent on the unique (owner, name) key, so two
sync cycles mapping the same account type end up with one portfolio.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger("investra")


class MappingError(Exception):
    """No portfolio for the account type and auto-create is disabled."""


@dataclass(frozen=True)
class MappingPolicy:
    create_missing: bool = True


@dataclass(frozen=True)
class PortfolioMapping:
    account_type: str
    portfolio_id: int
    portfolio_name: str
    created: bool


# Canonical account type -> portfolio naming convention and aliases.
ACCOUNT_TYPE_MAPPINGS = {
    "TFSA": {
        "portfolio_name": "TFSA",
        "description": "Tax-Free Savings Account",
        "aliases": ("tfsa", "tax-free savings account", "tax free savings account"),
    },
    "RRSP": {
        "portfolio_name": "RRSP",
        "description": "Registered Retirement Savings Plan",
        "aliases": ("rrsp", "registered retirement savings plan", "spousal rrsp"),
    },
    "RESP": {
        "portfolio_name": "RESP",
        "description": "Registered Education Savings Plan",
        "aliases": ("resp", "registered education savings plan", "family resp"),
    },
    "FHSA": {
        "portfolio_name": "FHSA",
        "description": "First Home Savings Account",
        "aliases": ("fhsa", "first home savings account"),
    },
    "Margin": {
        "portfolio_name": "Margin",
        "description": "Non-registered margin account",
        "aliases": ("margin", "non-registered", "non registered", "nonregistered",
                    "individual margin"),
    },
    "Cash": {
        "portfolio_name": "Cash",
        "description": "Non-registered cash account",
        "aliases": ("cash", "personal", "individual cash", "chequing"),
    },
    "LIRA": {
        "portfolio_name": "LIRA",
        "description": "Locked-In Retirement Account",
        "aliases": ("lira", "locked-in retirement account"),
    },
    "RRIF": {
        "portfolio_name": "RRIF",
        "description": "Registered Retirement Income Fund",
        "aliases": ("rrif", "registered retirement income fund"),
    },
    "Crypto": {
        "portfolio_name": "Crypto",
        "description": "Crypto account",
        "aliases": ("crypto", "cryptocurrency"),
    },
}

_ALIASES = {alias: name
            for name, entry in ACCOUNT_TYPE_MAPPINGS.items()
            for alias in entry["aliases"]}


def normalize_account_type(account_type: Optional[str]) -> str:
    """Canonical account type for a brokerage label; unknown labels pass through tidied."""
    label = re.sub(r"\s+", " ", (account_type or "").strip())
    if not label:
        raise MappingError("candidate has no account type")
    key = label.lower().rstrip(".")
    key = re.sub(r"\s+account$", "", key) if key not in _ALIASES else key
    return _ALIASES.get(key, label)


class PortfolioMapper:
    """lookup() never creates; map_or_create() creates when the policy allows."""

    def __init__(self, ledger, owner: str = "default", default_currency: str = "CAD"):
        self.ledger = ledger
        self.owner = owner
        self.default_currency = default_currency

    def _portfolio_name(self, account_type: str) -> str:
        entry = ACCOUNT_TYPE_MAPPINGS.get(account_type)
        return entry["portfolio_name"] if entry else account_type

    def lookup(self, account_type: Optional[str]) -> Optional[PortfolioMapping]:
        try:
            canonical = normalize_account_type(account_type)
        except MappingError:
            return None
        name = self._portfolio_name(canonical)
        portfolio = self.ledger.find_portfolio(self.owner, name)
        if portfolio is None:
            return None
        return PortfolioMapping(canonical, portfolio["id"], portfolio["name"], False)

    def map_or_create(self, account_type: Optional[str],
                      policy: MappingPolicy = MappingPolicy()) -> PortfolioMapping:
        canonical = normalize_account_type(account_type)
        existing = self.lookup(canonical)
        if existing is not None:
            return existing

        name = self._portfolio_name(canonical)
        if not policy.create_missing:
            raise MappingError(
                f"no portfolio for account type {canonical!r}, auto-create disabled")

        entry = ACCOUNT_TYPE_MAPPINGS.get(canonical, {})
        portfolio, created = self.ledger.create_portfolio(
            self.owner, name, self.default_currency,
            description=entry.get("description", f"{canonical} (created from email import)"),
            account_type=canonical,
        )
        return PortfolioMapping(canonical, portfolio["id"], portfolio["name"], created)
