"""
Merchant name normalization.
"""
import re

from ..models.financial import Transaction

MAX_KEY_TOKENS = 3

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_merchant(raw: str) -> str:
    """
    Canonical merchant key: lower-case, alphanumerics and spaces only,
    first three tokens.

    ``"SPOTIFY USA  Premium #4412"`` becomes ``"spotify usa premium"``.
    Unrelated merchants sharing a three-word prefix collide.
    """
    if not raw:
        return ""
    cleaned = _NON_ALPHANUMERIC.sub("", raw.lower())
    tokens = _WHITESPACE.split(cleaned.strip())
    return " ".join(token for token in tokens[:MAX_KEY_TOKENS] if token)


def merchant_key_for(transaction: Transaction) -> str:
    """Key of the best available description of a transaction."""
    return normalize_merchant(transaction.label)
