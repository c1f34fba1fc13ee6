"""
Email Parser
=============
Turns a RawMessage into a ParsedTradeCandidate using a per-sender grammar.

A grammar is an ordered tuple of rules, tried most-specific first so that
trade types sharing vocabulary (option trades vs. plain buys, dividends vs.
narrative confirmations) are never confused. Pure functions only: no I/O.

Candidate invariants: quantity > 0, every numeric finite and non-negative,
transaction_type in TRANSACTION_TYPES. Anything else raises ParseFailure.
"""

import html as html_lib
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .symbols import split_named_symbol


class ParseFailure(Exception):
    """The message could not be turned into a valid trade candidate."""


TRANSACTION_TYPES = ("buy", "sell", "dividend", "option_expired")

OPTION_MULTIPLIER = 100


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_RE_BLOCK_TAGS = re.compile(r"<\s*(?:br|/p|/div|/tr|/li|/h\d|/table)\b[^>]*>", re.IGNORECASE)
_RE_CELL_TAGS = re.compile(r"<\s*/t[dh]\s*>", re.IGNORECASE)
_RE_DROP_BLOCKS = re.compile(r"<(script|style|head)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_RE_TAGS = re.compile(r"<[^>]+>")


def html_to_text(html_content: str) -> str:
    """Strip HTML to text, keeping one line per block element."""
    if not html_content:
        return ""
    text = _RE_DROP_BLOCKS.sub(" ", html_content)
    text = _RE_BLOCK_TAGS.sub("\n", text)
    text = _RE_CELL_TAGS.sub(" ", text)
    text = _RE_TAGS.sub(" ", text)
    text = html_lib.unescape(text).replace("\xa0", " ")
    lines = (re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


_RE_NUMBER = re.compile(r"[-+]?(?:\d[\d,]*(?:\.\d+)?|\.\d+)")


def parse_amount(s) -> Optional[float]:
    """Parse a money/quantity string like 'US$1,234.56' or '10 shares'.

    Returns None for missing, unparsable, non-finite or negative values.
    """
    if s is None:
        return None
    if isinstance(s, (int, float)):
        value = float(s)
    else:
        match = _RE_NUMBER.search(str(s))
        if not match:
            return None
        try:
            value = float(match.group(0).replace(",", ""))
        except ValueError:
            return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


_RE_CURRENCY_USD = re.compile(r"US\$|\bUSD\b", re.IGNORECASE)
_RE_CURRENCY_CAD = re.compile(r"C\$|CA\$|\bCAD\b", re.IGNORECASE)


def extract_currency(text: str) -> Optional[str]:
    """Explicit currency marker in the text, or None when only a bare '$' appears."""
    if _RE_CURRENCY_USD.search(text):
        return "USD"
    if _RE_CURRENCY_CAD.search(text):
        return "CAD"
    return None


_RE_DATE_PART = re.compile(
    r"(?P<long>[A-Z][a-z]{2,8}\.?\s+\d{1,2},?\s+\d{4})"
    r"|(?P<iso>\d{4}-\d{2}-\d{2})"
    r"|(?P<slash>\d{1,2}/\d{1,2}/\d{4})"
)
_RE_TIME_PART = re.compile(
    r"(?P<h>\d{1,2}):(?P<m>\d{2})(?::(?P<s>\d{2}))?\s*(?P<ampm>[AaPp]\.?[Mm]\.?)?"
)
_RE_TZ = re.compile(r"\b(EDT|EST|ET|PDT|PST|PT|UTC|GMT)\b")

_EASTERN = ZoneInfo("America/Toronto")
_ZONES = {
    "EDT": _EASTERN, "EST": _EASTERN, "ET": _EASTERN,
    "PDT": ZoneInfo("America/Vancouver"), "PST": ZoneInfo("America/Vancouver"),
    "PT": ZoneInfo("America/Vancouver"),
    "UTC": timezone.utc, "GMT": timezone.utc,
}


def _parse_date(match) -> Optional[datetime]:
    if match.group("iso"):
        formats, value = ("%Y-%m-%d",), match.group("iso")
    elif match.group("slash"):
        formats, value = ("%m/%d/%Y",), match.group("slash")
    else:
        value = match.group("long").replace(",", " ").replace(".", "")
        value = re.sub(r"\s+", " ", value)
        formats = ("%B %d %Y", "%b %d %Y")
    for fmt in formats:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def extract_datetime(text: str) -> tuple[Optional[str], bool, bool]:
    """Find a trade timestamp in a text fragment.

    Returns (iso_utc, has_date, has_time). Times without a zone are taken as
    Eastern, the zone brokerage confirmations are written in.
    """
    if not text:
        return None, False, False
    date_match = _RE_DATE_PART.search(text)
    if not date_match:
        return None, False, False
    day = _parse_date(date_match)
    if day is None:
        return None, False, False

    rest = text[date_match.end():]
    before = text[:date_match.start()]
    # "09:45 EST on 2025-01-15" puts the time first
    time_match = _RE_TIME_PART.search(rest) or _RE_TIME_PART.search(before)
    has_time = False
    if time_match:
        hour, minute = int(time_match.group("h")), int(time_match.group("m"))
        second = int(time_match.group("s") or 0)
        ampm = (time_match.group("ampm") or "").lower().replace(".", "")
        if ampm == "pm" and hour < 12:
            hour += 12
        elif ampm == "am" and hour == 12:
            hour = 0
        if hour < 24 and minute < 60 and second < 60:
            day = day.replace(hour=hour, minute=minute, second=second)
            has_time = True

    tz_match = _RE_TZ.search(rest) or _RE_TZ.search(before)
    zone = _ZONES[tz_match.group(1)] if tz_match else _EASTERN
    stamp = day.replace(tzinfo=zone).astimezone(timezone.utc)
    return stamp.isoformat(), True, has_time


_RE_FIELD = re.compile(r"^[ \t]*([A-Za-z][A-Za-z ()/#.-]{0,40}?)[ \t]*:[ \t]*(.*?)[ \t]*$",
                       re.MULTILINE)


def extract_fields(text: str) -> dict:
    """'Label: value' lines as a dict keyed by lower-cased label (first wins)."""
    fields = {}
    for label, value in _RE_FIELD.findall(text):
        fields.setdefault(label.strip().lower(), value)
    return fields


def _first(fields: dict, *labels) -> Optional[str]:
    for label in labels:
        value = fields.get(label)
        if value:
            return value
    return None


# ---------------------------------------------------------------------------
# Account types
# ---------------------------------------------------------------------------

_ACCOUNT_PATTERNS = (
    ("TFSA", re.compile(r"\btfsa\b|tax.free.savings", re.IGNORECASE)),
    ("RRSP", re.compile(r"\brrsp\b|registered.retirement.savings", re.IGNORECASE)),
    ("RESP", re.compile(r"\bresp\b|registered.education", re.IGNORECASE)),
    ("FHSA", re.compile(r"\bfhsa\b|first.home.savings", re.IGNORECASE)),
    ("LIRA", re.compile(r"\blira\b|locked.in.retirement", re.IGNORECASE)),
    ("RRIF", re.compile(r"\brrif\b|retirement.income.fund", re.IGNORECASE)),
    ("Margin", re.compile(r"\bmargin\b|non.registered", re.IGNORECASE)),
    ("Crypto", re.compile(r"\bcrypto\b", re.IGNORECASE)),
    ("Cash", re.compile(r"\bcash\b|\bpersonal\b", re.IGNORECASE)),
)


def extract_account_type(fields: dict, text: str) -> Optional[str]:
    """Account label from an 'Account:' line, else from narrative wording."""
    explicit = _first(fields, "account", "account type", "portfolio")
    source = explicit or text
    for name, pattern in _ACCOUNT_PATTERNS:
        if pattern.search(source):
            return name
    return explicit.strip() if explicit else None


# ---------------------------------------------------------------------------
# Grammar model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    name: str
    pattern: re.Pattern
    extract: Callable  # (match, text, fields) -> dict of trade fields


@dataclass(frozen=True)
class Grammar:
    name: str
    domains: tuple
    rules: tuple
    keywords: tuple
    default_currency: str = "CAD"

    def matches_sender(self, address: str) -> bool:
        domain = address.rsplit("@", 1)[-1].lower().strip(" >")
        return any(domain == d or domain.endswith("." + d) for d in self.domains)


# ---------------------------------------------------------------------------
# Wealthsimple rules
# ---------------------------------------------------------------------------

_PRICE_LABELS = ("average price", "avg price", "price", "fill price", "execution price",
                 "price per share", "price per unit", "unit price")
_QUANTITY_LABELS = ("shares", "quantity", "units", "number of shares")
_SYMBOL_LABELS = ("symbol", "ticker", "security", "etf", "stock")
_TOTAL_LABELS = ("total cost", "total value", "total proceeds", "total", "total amount",
                 "estimated total", "gross proceeds", "net proceeds")
_FEE_LABELS = ("fees", "fee", "commission", "commission and fees")
_DATE_LABELS = ("time", "filled at", "execution time", "execution", "date", "trade date",
                "transaction date", "payment date", "expiry date", "expiration date")
_EXPIRY_LABELS = ("expiry", "expiry date", "expiration", "expiration date")


def _require(value: Optional[float], what: str) -> float:
    if value is None:
        raise ParseFailure(f"missing or invalid {what}")
    return value


def _symbol_field(fields: dict, *labels) -> tuple[str, Optional[str]]:
    """(symbol_raw, asset_name) from the first symbol-bearing line."""
    value = _first(fields, *labels)
    if not value:
        raise ParseFailure("no symbol line")
    return split_named_symbol(value)


def _with_expiry(symbol_raw: str, fields: dict) -> str:
    expiry = _first(fields, *_EXPIRY_LABELS)
    if expiry:
        expiry_iso, has_date, _ = extract_datetime(expiry)
        if has_date:
            return f"{symbol_raw} {expiry_iso[:10]}"
    return symbol_raw


def _structured_trade(side: str) -> Callable:
    def extract(match, text, fields):
        # "Action: Bought 100 shares of AAPL" carries quantity and symbol inline
        symbol, asset_name = None, None
        if match.group("symbol"):
            symbol = match.group("symbol")
            _, asset_name = split_named_symbol(_first(fields, *_SYMBOL_LABELS) or "")
        else:
            symbol, asset_name = _symbol_field(fields, *_SYMBOL_LABELS)
        quantity_raw = match.group("qty") or _first(fields, *_QUANTITY_LABELS)
        return {
            "transaction_type": side,
            "symbol_raw": symbol.strip(),
            "asset_name": asset_name,
            "quantity": _require(parse_amount(quantity_raw), "quantity"),
            "price": _require(parse_amount(_first(fields, *_PRICE_LABELS)), "price"),
            "price_explicit": True,
            "total_amount": parse_amount(_first(fields, *_TOTAL_LABELS)),
            "multiplier": 1,
        }
    return extract


def _option_trade(match, text, fields):
    option = _first(fields, "option", "contract", "symbol")
    if not option:
        raise ParseFailure("no option line")
    return {
        "transaction_type": match.group("side").lower(),
        "symbol_raw": _with_expiry(option.strip(), fields),
        "quantity": _require(parse_amount(_first(fields, "contracts", "quantity")), "contracts"),
        "price": _require(parse_amount(_first(fields, *_PRICE_LABELS)), "price"),
        "price_explicit": True,
        "total_amount": parse_amount(_first(fields, *_TOTAL_LABELS)),
        "multiplier": OPTION_MULTIPLIER,
        "asset_type": "option",
        "position_effect": match.group("effect").lower(),
    }


def _option_expired(match, text, fields):
    option = _first(fields, "option", "contract", "symbol")
    if not option:
        raise ParseFailure("no option line")
    symbol_raw = option.strip()
    if not re.search(r"\d{4}-\d{2}-\d{2}$", symbol_raw):
        symbol_raw = _with_expiry(symbol_raw, fields)
    return {
        "transaction_type": "option_expired",
        "symbol_raw": symbol_raw,
        "quantity": _require(parse_amount(_first(fields, "contracts", "quantity")), "contracts"),
        "price": 0.0,
        "price_explicit": False,
        "total_amount": 0.0,
        "multiplier": OPTION_MULTIPLIER,
        "asset_type": "option",
    }


def _dividend(match, text, fields):
    symbol, asset_name = _symbol_field(fields, *_SYMBOL_LABELS)
    amount = parse_amount(_first(fields, "amount", "total dividend", "net amount", "total",
                                 "gross amount"))
    per_share = parse_amount(_first(fields, "dividend per share", "dividend rate",
                                    "amount per share", "rate", "per share"))
    shares = parse_amount(_first(fields, "shares", "shares held", "shares owned",
                                 "quantity", "units"))

    if shares:
        quantity = shares
        if per_share is not None:
            price = per_share
        elif amount is not None:
            price = round(amount / shares, 6)
        else:
            raise ParseFailure("dividend has no amount")
        total = amount if amount is not None else round(shares * per_share, 2)
    else:
        quantity = 1.0
        price = _require(amount if amount is not None else per_share, "dividend amount")
        total = price
    return {
        "transaction_type": "dividend",
        "symbol_raw": symbol.strip(),
        "asset_name": asset_name,
        "quantity": quantity,
        "price": price,
        "price_explicit": amount is not None or per_share is not None,
        "total_amount": total,
        "multiplier": 1,
    }


def _narrative(side: str) -> Callable:
    def extract(match, text, fields):
        price_raw = match.group("price") or _first(fields, *_PRICE_LABELS)
        return {
            "transaction_type": side,
            "symbol_raw": match.group("symbol"),
            "quantity": _require(parse_amount(match.group("qty")), "quantity"),
            "price": _require(parse_amount(price_raw), "price"),
            "price_explicit": True,
            "total_amount": parse_amount(_first(fields, *_TOTAL_LABELS)),
            "multiplier": 1,
        }
    return extract


_ORDER_KIND = r"(?:(?:Market|Limit|Stop(?:[ \t-]Limit)?|Recurring)[ \t]+)?"
# "Type:", "Order Type:", "Transaction:", "Transaction Type:", "Action:", "Side:"
_SIDE_LINE = (r"^[ \t]*(?:Action|Side|Transaction(?:[ \t]+Type)?|Order(?:[ \t]+Type)?|Type)"
              r"[ \t]*:[ \t]*")
_BUY_VERB = r"(?:Buy|Bought|Purchased?)\b(?![ \t]+to[ \t]+(?:Open|Close))"
_SELL_VERB = r"(?:Sell|Sold)\b(?![ \t]+to[ \t]+(?:Open|Close))"
_SYMBOL = r"(?P<symbol>[A-Z][A-Z0-9]*(?:[.-][A-Z0-9]+)?)"
_INLINE_TRADE = (r"(?:[ \t]+(?P<qty>[\d,]+(?:\.\d+)?)[ \t]+(?:shares?|units?)[ \t]+of[ \t]+"
                 + _SYMBOL + r")?")
_NARRATIVE_TAIL = (
    r"\s+(?P<qty>[\d,]+(?:\.\d+)?)\s+shares?\s+of\s+" + _SYMBOL +
    r"(?:\s+(?:at|@)\s+(?:an?\s+average\s+price\s+of\s+)?"
    r"(?P<price>(?:US|CA?)?\$?\s*[\d,]+(?:\.\d+)?))?"
)
_DIVIDEND_MARKER = (
    r"\bdiv(?:idend)?s?\s+(?:payments?|received|paid|credited|distribution)"
    r"|\b(?:received|paid|credited)\s+(?:a\s+|your\s+)?dividend"
    r"|^[ \t]*Dividends?(?:[ \t]+(?:Received|Payment|Paid|Notice|Confirmation))?[ \t]*:?[ \t]*$"
    r"|" + _SIDE_LINE + r"Dividend"
)

WEALTHSIMPLE_RULES = (
    Rule("option_expired", re.compile(
        r"option\s+(?:contract\s+)?(?:in\s+your\s+account\s+)?(?:has\s+)?expired"
        r"|expired\s+worthless|^[ \t]*Option[ \t]+Expiration(?:[ \t]+Notice)?[ \t]*$"
        r"|" + _SIDE_LINE + r"Option\s+expir", re.IGNORECASE | re.MULTILINE), _option_expired),
    Rule("option_trade", re.compile(
        _SIDE_LINE + _ORDER_KIND + r"(?P<side>Buy|Sell)[ \t]+to[ \t]+(?P<effect>Open|Close)\b",
        re.IGNORECASE | re.MULTILINE), _option_trade),
    Rule("structured_buy", re.compile(
        _SIDE_LINE + _ORDER_KIND + _BUY_VERB + _INLINE_TRADE, re.IGNORECASE | re.MULTILINE),
        _structured_trade("buy")),
    Rule("structured_sell", re.compile(
        _SIDE_LINE + _ORDER_KIND + _SELL_VERB + _INLINE_TRADE, re.IGNORECASE | re.MULTILINE),
        _structured_trade("sell")),
    Rule("dividend", re.compile(_DIVIDEND_MARKER, re.IGNORECASE | re.MULTILINE), _dividend),
    Rule("narrative_buy", re.compile(
        r"\b(?:You\s+)?(?:bought|purchased|acquired)" + _NARRATIVE_TAIL, re.IGNORECASE),
        _narrative("buy")),
    Rule("narrative_sell", re.compile(
        r"\b(?:You\s+)?sold" + _NARRATIVE_TAIL, re.IGNORECASE), _narrative("sell")),
)

WEALTHSIMPLE = Grammar(
    name="wealthsimple",
    domains=("wealthsimple.com", "notifications.wealthsimple.com", "trade.wealthsimple.com"),
    rules=WEALTHSIMPLE_RULES,
    keywords=("trade confirmation", "order filled", "order has been filled",
              "transaction complete", "bought", "sold", "purchased", "dividend",
              "expired", "confirmation", "executed", "settlement"),
    default_currency="CAD",
)

GRAMMARS = (WEALTHSIMPLE,)

_STRUCTURED_RULES = ("option_expired", "option_trade", "structured_buy",
                     "structured_sell", "dividend")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def grammar_for_sender(address: str) -> Optional[Grammar]:
    if not address or "@" not in address:
        return None
    for grammar in GRAMMARS:
        if grammar.matches_sender(address):
            return grammar
    return None


_RE_FORWARD_MARKER = re.compile(
    r"-{2,}\s*Forwarded message\s*-{2,}|Begin forwarded message:|^\s*-{2,}\s*Original Message\s*-{2,}",
    re.IGNORECASE | re.MULTILINE)
_RE_FORWARD_FROM = re.compile(r"^\s*From:\s*(?:[^<\n]*<)?([\w.+-]+@[\w-]+(?:\.[\w-]+)+)>?",
                              re.IGNORECASE | re.MULTILINE)
_RE_FORWARD_HEADER = re.compile(r"^\s*(?:From|Date|Sent|Subject|To|Cc)\s*:", re.IGNORECASE)


def unwrap_forwarded(text: str) -> tuple[Optional[str], str]:
    """Return (original_sender, forwarded_body) for a forwarded message.

    original_sender is None when the text is not a forward.
    """
    marker = _RE_FORWARD_MARKER.search(text)
    if not marker:
        return None, text
    rest = text[marker.end():]
    sender = _RE_FORWARD_FROM.search(rest[:1000])
    if not sender:
        return None, text

    lines = rest.split("\n")
    start = 0
    while start < len(lines) and (not lines[start].strip()
                                  or _RE_FORWARD_HEADER.match(lines[start])):
        start += 1
    return sender.group(1).lower(), "\n".join(lines[start:])


def message_text(raw: dict) -> str:
    text = (raw.get("text_body") or "").strip()
    if not text:
        text = html_to_text(raw.get("html_body") or "")
    return text.replace("\r\n", "\n")


def _confidence(rule_name: str, trade: dict, account_type: Optional[str],
                currency_explicit: bool, has_date: bool, has_time: bool,
                total_consistent: bool) -> float:
    score = 0.5 if rule_name in _STRUCTURED_RULES else 0.4
    if trade.get("price_explicit"):
        score += 0.15
    if account_type:
        score += 0.1
    if currency_explicit:
        score += 0.05
    if has_date:
        score += 0.1
    if has_time:
        score += 0.05
    if total_consistent:
        score += 0.1
    return round(min(max(score, 0.0), 1.0), 3)


def _apply_grammar(grammar: Grammar, raw: dict, text: str) -> dict:
    fields = extract_fields(text)
    first_failure = None
    for rule in grammar.rules:
        match = rule.pattern.search(text)
        if not match:
            continue
        # A matching rule that cannot build a candidate hands over to the next one
        try:
            trade = rule.extract(match, text, fields)
            return _build_candidate(grammar, rule, trade, raw, text, fields)
        except ParseFailure as e:
            if first_failure is None:
                first_failure = e
    if first_failure is not None:
        raise first_failure

    haystack = f"{raw.get('subject') or ''}\n{text}".lower()
    if not any(k in haystack for k in grammar.keywords):
        raise ParseFailure("not a transaction confirmation")
    raise ParseFailure(f"no {grammar.name} rule matched")


def _build_candidate(grammar: Grammar, rule: Rule, trade: dict, raw: dict,
                     text: str, fields: dict) -> dict:
    quantity = trade["quantity"]
    price = trade["price"]
    if quantity is None or quantity <= 0:
        raise ParseFailure("quantity must be positive")
    if trade["transaction_type"] not in TRANSACTION_TYPES:
        raise ParseFailure(f"unknown transaction type {trade['transaction_type']}")

    fee_raw = _first(fields, *_FEE_LABELS)
    fees = parse_amount(fee_raw) or 0.0

    multiplier = trade.get("multiplier", 1)
    computed_total = round(quantity * price * multiplier, 2)
    total = trade.get("total_amount")
    total_consistent = False
    if total is not None and trade["transaction_type"] in ("buy", "sell"):
        tolerance = max(0.01, total * 0.005)
        total_consistent = (abs(computed_total - total) <= tolerance
                            or abs(computed_total + fees - total) <= tolerance
                            or abs(computed_total - fees - total) <= tolerance)
    elif total is not None:
        total_consistent = trade["transaction_type"] == "dividend" and \
            abs(round(quantity * price, 2) - total) <= 0.01
    if total is None:
        total = round(computed_total + fees, 2)

    account_type = extract_account_type(fields, text)
    currency = extract_currency(text)
    when, has_date, has_time = extract_datetime(_first(fields, *_DATE_LABELS) or "")
    transaction_datetime = when or raw.get("received_at") \
        or datetime.now(timezone.utc).isoformat()

    for name, value in (("quantity", quantity), ("price", price),
                        ("fees", fees), ("total_amount", total)):
        if value is None or not math.isfinite(value) or value < 0:
            raise ParseFailure(f"{name} is not a finite non-negative number")

    return {
        "source_message_id": raw.get("message_id"),
        "symbol_raw": trade["symbol_raw"],
        "transaction_type": trade["transaction_type"],
        "quantity": quantity,
        "price": price,
        "fees": fees,
        "total_amount": total,
        "account_type": account_type,
        "transaction_datetime": transaction_datetime,
        "currency": currency or grammar.default_currency,
        "confidence": _confidence(rule.name, trade, account_type, currency is not None,
                                  has_date, has_time, total_consistent),
        "parse_method": f"{grammar.name}:{rule.name}",
        "asset_type": trade.get("asset_type", "stock"),
        "asset_name": trade.get("asset_name") or _first(fields, "name", "security name", "company"),
        "order_id": _first(fields, "order id", "order #", "order number", "reference"),
    }


def parse(raw: dict) -> dict:
    """Parse a RawMessage into a trade candidate, or raise ParseFailure."""
    text = message_text(raw)
    if not text:
        raise ParseFailure("empty message body")

    grammar = grammar_for_sender(raw.get("from_address") or "")
    if grammar is None:
        original_sender, forwarded_text = unwrap_forwarded(text)
        grammar = grammar_for_sender(original_sender or "")
        if grammar is None:
            raise ParseFailure(f"unsupported sender {raw.get('from_address')}")
        text = forwarded_text
    else:
        # A broker message can still wrap a forward; grammar fields come from the inner body.
        _, text = unwrap_forwarded(text)

    return _apply_grammar(grammar, raw, text)
