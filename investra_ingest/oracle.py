"""
AI Symbol Oracle
=================
Claude-backed lookup for instrument mentions the local grammar cannot pin
down (company names, option descriptions without an expiry, odd tickers).

The oracle is untrusted: answers are validated by the Symbol Resolver
against the instrument grammar before use. Calls are bounded by a short
client timeout and are never retried, so a slow provider costs one timeout
per lookup at most.
"""

import json
import logging
from typing import Optional

from .config import get_secret

log = logging.getLogger("investra")

DEFAULT_MODEL = "claude-haiku-4-5-20251001"

SYSTEM_PROMPT = """\
You map brokerage trade-confirmation instrument mentions to exchange ticker symbols.

Rules:
1. Return the primary listing ticker in upper case. Canadian listings use the
   Yahoo-style suffix: .TO (TSX), .V (TSX Venture), .NE (NEO), .CN (CSE).
2. Options use the OCC format ROOT + YYMMDD + C/P + strike*1000 padded to 8
   digits, e.g. AAPL250620C00150000. If the expiry is unknown, return null.
3. Never guess. If you are not sure, return null with a low confidence.

Respond with ONLY a JSON object:
{"symbol": "<ticker or null>", "confidence": <0..1>, "asset_type": "stock|etf|option|crypto"}
"""


def get_anthropic_api_key() -> str:
    """Get Anthropic API key from env vars, .env file, or Azure Key Vault.

    Raises ValueError if no key found.
    """
    api_key = get_secret("ANTHROPIC_API_KEY", "anthropic-api-key")
    if not api_key:
        raise ValueError(
            "No Anthropic API key found. Set ANTHROPIC_API_KEY in .env "
            "or configure Azure Key Vault with secret 'anthropic-api-key'."
        )
    return api_key


def _strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


class AnthropicSymbolOracle:
    """lookup_symbol(query) -> {"symbol", "confidence", "asset_type"} | None."""

    def __init__(self, api_key: Optional[str] = None, model: str = DEFAULT_MODEL,
                 timeout: float = 3.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(
                api_key=self.api_key or get_anthropic_api_key(),
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def lookup_symbol(self, query: str) -> Optional[dict]:
        client = self._get_client()
        message = client.messages.create(
            model=self.model,
            max_tokens=200,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": f"Instrument mention: {query}"}],
        )
        response_text = _strip_code_fences(message.content[0].text)

        try:
            answer = json.loads(response_text)
        except json.JSONDecodeError as e:
            log.error(f"Symbol oracle returned invalid JSON: {e}")
            log.debug(f"Raw response: {response_text[:500]}")
            return None

        if not isinstance(answer, dict) or not answer.get("symbol"):
            return None
        return {
            "symbol": str(answer["symbol"]).strip().upper(),
            "confidence": answer.get("confidence", 0.5),
            "asset_type": answer.get("asset_type"),
        }
