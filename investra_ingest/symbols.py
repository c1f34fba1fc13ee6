"""
Symbol Resolver
================
Turns a raw instrument mention into a canonical tradable symbol.

Resolution order:
  1. Direct match against the local instrument grammar (tickers, exchange
     suffixes, OCC option symbols, option descriptions, known company names)
  2. The AI symbol oracle, when the direct match is missing or weak and
     enhancement is enabled; its answer must pass the same grammar
  3. The raw symbol itself, low confidence, flagged for review

Every source has a confidence ceiling so that for the same input a direct
resolution never scores below an oracle fallback.
"""

import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

log = logging.getLogger("investra")

DIRECT_CEILING = 0.95
NORMALIZED_CEILING = 0.9
AI_ENHANCED_CEILING = 0.75
AI_FALLBACK_CONFIDENCE = 0.3
PARTIAL_OPTION_CONFIDENCE = 0.4


@dataclass(frozen=True)
class ResolvedSymbol:
    symbol_raw: str
    normalized_symbol: str
    source: str          # direct | ai-enhanced | ai-fallback
    confidence: float
    asset_type: str = "stock"
    needs_review: bool = False


# ---------------------------------------------------------------------------
# Instrument grammar
# ---------------------------------------------------------------------------

RE_TICKER = re.compile(r"^[A-Z]{1,5}$")
RE_LISTED_TICKER = re.compile(
    r"^[A-Z][A-Z0-9]{0,5}(?:\.[A-Z])?(?:\.UN|-U)?(?:\.(?:TO|V|NE|CN))?$")
RE_OCC = re.compile(r"^(?P<root>[A-Z]{1,6})(?P<expiry>\d{6})(?P<right>[CP])(?P<strike>\d{8})$")
RE_OPTION_DESC = re.compile(
    r"^(?P<root>[A-Z]{1,6})\s+\$?(?P<strike>\d+(?:\.\d+)?)\s+(?P<right>call|put)s?"
    r"(?:\s+(?P<expiry>\d{4}-\d{2}-\d{2}))?$",
    re.IGNORECASE)
RE_OPTION_DESC_EXPIRY_FIRST = re.compile(
    r"^(?P<root>[A-Z]{1,6})\s+(?P<expiry>\d{4}-\d{2}-\d{2})\s+\$?(?P<strike>\d+(?:\.\d+)?)"
    r"\s+(?P<right>call|put)s?$",
    re.IGNORECASE)
# "NVDA MAY 30 $108 CALL", optionally followed by the ISO expiry that supplies the year
RE_OPTION_DESC_MONTH_DAY = re.compile(
    r"^(?P<root>[A-Z]{1,6})\s+(?P<month>[A-Z]{3})[A-Z]*\.?\s+(?P<day>\d{1,2})\s+"
    r"\$?(?P<strike>\d+(?:\.\d+)?)\s+(?P<right>call|put)s?"
    r"(?:\s+(?P<expiry>\d{4}-\d{2}-\d{2}))?$",
    re.IGNORECASE)
# "Royal Bank of Canada (RY.TO)"
RE_NAMED_TICKER = re.compile(
    r"^(?P<name>.+?)\s*\(\s*(?P<ticker>[A-Z][A-Z0-9]{0,5}(?:[.-][A-Z0-9]{1,3}){0,2})\s*\)\s*$")

# Company names that brokers print instead of tickers.
COMPANY_ALIASES = {
    "apple": "AAPL",
    "apple inc": "AAPL",
    "microsoft": "MSFT",
    "microsoft corp": "MSFT",
    "microsoft corporation": "MSFT",
    "alphabet": "GOOGL",
    "alphabet inc": "GOOGL",
    "amazon": "AMZN",
    "amazon.com": "AMZN",
    "amazon.com inc": "AMZN",
    "tesla": "TSLA",
    "tesla inc": "TSLA",
    "nvidia": "NVDA",
    "nvidia corp": "NVDA",
    "shopify": "SHOP.TO",
    "shopify inc": "SHOP.TO",
    "royal bank of canada": "RY.TO",
    "toronto-dominion bank": "TD.TO",
    "vanguard total stock market etf": "VTI",
    "spdr s&p 500 etf trust": "SPY",
}

_RE_COMPANY_SUFFIX = re.compile(r"[,.]?\s+(?:inc|corp|corporation|ltd|limited|co|plc)\.?$",
                                re.IGNORECASE)


def occ_symbol(root: str, expiry: str, right: str, strike: float) -> str:
    """OCC option symbol: ROOT + YYMMDD + C/P + strike*1000 padded to 8 digits."""
    day = datetime.strptime(expiry, "%Y-%m-%d")
    return f"{root.upper()}{day:%y%m%d}{right[0].upper()}{int(round(strike * 1000)):08d}"


def split_named_symbol(value: str) -> tuple[str, Optional[str]]:
    """Split 'Company Name (TICKER)' into ('TICKER', 'Company Name').

    Values without a trailing ticker come back unchanged with no name.
    """
    value = (value or "").strip()
    m = RE_NAMED_TICKER.match(value)
    if not m:
        return value, None
    return m.group("ticker"), m.group("name").strip()


def _month_day_option(m) -> tuple[str, str, float]:
    root, right, strike = m.group("root"), m.group("right"), float(m.group("strike"))
    if m.group("expiry"):
        expiry = datetime.strptime(m.group("expiry"), "%Y-%m-%d")
        listed = datetime.strptime(f"{m.group('month')[:3]} {m.group('day')} {expiry.year}",
                                   "%b %d %Y")
        if (listed.month, listed.day) == (expiry.month, expiry.day):
            return occ_symbol(root, m.group("expiry"), right, strike), "option", NORMALIZED_CEILING
    desc = f"{root.upper()} {m.group('month')[:3].upper()} {int(m.group('day'))} " \
           f"{m.group('strike')} {right.lower()}"
    return desc, "option", PARTIAL_OPTION_CONFIDENCE


def match_instrument(symbol: str) -> Optional[tuple[str, str, float]]:
    """Match a string against the instrument grammar.

    Returns (normalized_symbol, asset_type, confidence) or None.
    """
    if not symbol:
        return None
    ticker, name = split_named_symbol(symbol)
    if name is not None:
        return match_instrument(ticker)
    text = symbol.strip().lstrip("$").strip()
    compact = re.sub(r"\s+", "", text)

    if RE_OCC.match(compact):
        return compact, "option", DIRECT_CEILING
    if RE_TICKER.match(text) or RE_LISTED_TICKER.match(text):
        return text, "stock", DIRECT_CEILING

    for pattern in (RE_OPTION_DESC, RE_OPTION_DESC_EXPIRY_FIRST):
        m = pattern.match(text)
        if not m:
            continue
        if m.group("expiry"):
            try:
                occ = occ_symbol(m.group("root"), m.group("expiry"), m.group("right"),
                                 float(m.group("strike")))
            except ValueError:
                return None
            return occ, "option", NORMALIZED_CEILING
        # No expiry: the contract cannot be pinned down locally.
        desc = f"{m.group('root').upper()} {m.group('strike')} {m.group('right').lower()}"
        return desc, "option", PARTIAL_OPTION_CONFIDENCE

    m = RE_OPTION_DESC_MONTH_DAY.match(text)
    if m:
        try:
            return _month_day_option(m)
        except ValueError:
            return None

    alias = COMPANY_ALIASES.get(_RE_COMPANY_SUFFIX.sub("", text).strip().lower()) \
        or COMPANY_ALIASES.get(text.lower().rstrip("."))
    if alias:
        return alias, "stock", NORMALIZED_CEILING - 0.05

    upper = text.upper()
    if upper != text and (RE_TICKER.match(upper) or RE_LISTED_TICKER.match(upper)):
        return upper, "stock", NORMALIZED_CEILING - 0.05
    return None


def is_valid_symbol(symbol: str) -> bool:
    """True for a fully-qualified symbol: ticker, listed ticker or OCC option."""
    if not symbol:
        return False
    compact = symbol.strip()
    return bool(RE_OCC.match(compact) or RE_TICKER.match(compact)
                or RE_LISTED_TICKER.match(compact))


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class SymbolResolver:
    """Resolve raw instrument mentions. Never raises for a bad symbol."""

    def __init__(self, oracle=None, enhance: bool = True,
                 min_direct_confidence: float = 0.8):
        self.oracle = oracle
        self.enhance = enhance
        self.min_direct_confidence = min_direct_confidence
        self._oracle_cache: dict = {}

    def resolve(self, symbol_raw: str, context: Optional[dict] = None) -> ResolvedSymbol:
        context = context or {}
        symbol_raw = (symbol_raw or "").strip()
        hinted_type = context.get("asset_type") or "stock"

        direct = None
        matched = match_instrument(symbol_raw)
        if matched:
            normalized, asset_type, confidence = matched
            direct = ResolvedSymbol(symbol_raw, normalized, "direct", confidence,
                                    asset_type, False)
            if confidence >= self.min_direct_confidence:
                return direct

        if self.enhance and self.oracle is not None:
            enhanced = self._ask_oracle(symbol_raw, context)
            if enhanced is not None:
                if direct and enhanced.normalized_symbol == direct.normalized_symbol:
                    return replace(direct, confidence=min(
                        DIRECT_CEILING, max(direct.confidence, enhanced.confidence)))
                return enhanced

        if direct is not None:
            return replace(direct, needs_review=True)

        log.info(f"Symbol '{symbol_raw}' unresolved, using raw value (needs review)")
        return ResolvedSymbol(symbol_raw, symbol_raw.upper(), "ai-fallback",
                              AI_FALLBACK_CONFIDENCE, hinted_type, True)

    def _ask_oracle(self, symbol_raw: str, context: dict) -> Optional[ResolvedSymbol]:
        query = symbol_raw
        if context.get("asset_name"):
            query += f" ({context['asset_name']})"
        if context.get("asset_type") == "option" and "option" not in query.lower():
            query += " option"

        if query in self._oracle_cache:
            answer = self._oracle_cache[query]
        else:
            try:
                answer = self.oracle.lookup_symbol(query)
            except Exception as e:
                log.warning(f"Symbol oracle failed for '{query}': {e}")
                return None
            self._oracle_cache[query] = answer

        if not answer or not answer.get("symbol"):
            return None
        candidate = str(answer["symbol"]).strip().upper()
        matched = match_instrument(candidate)
        if not matched or not is_valid_symbol(matched[0]):
            log.warning(f"Symbol oracle answer '{candidate}' for '{symbol_raw}' rejected")
            return None

        try:
            oracle_confidence = float(answer.get("confidence", 0.5))
        except (TypeError, ValueError):
            oracle_confidence = 0.5
        confidence = min(max(oracle_confidence, AI_FALLBACK_CONFIDENCE), AI_ENHANCED_CEILING)
        asset_type = answer.get("asset_type") or matched[1]
        log.info(f"Symbol '{symbol_raw}' enhanced to {matched[0]} ({confidence:.2f})")
        return ResolvedSymbol(symbol_raw, matched[0], "ai-enhanced", confidence,
                              asset_type, False)
