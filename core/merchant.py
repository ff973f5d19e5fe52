"""
merchant.py
------------
Merchant text canonicalization.

Two levels of cleaning:
    - clean_transaction_description(): strips the noise bank feeds add around
      a merchant name (processor prefixes, store numbers, state codes) and
      keeps a human-readable form.
    - normalize_merchant_name(): the grouping key. Lowercase, no corporate
      or web suffixes, alphanumerics only, truncated to a fixed prefix.

canonical_key() combines the normalized name with the rounded amount. It is
deliberately tolerant: "NETFLIX.COM" and "Netflix Inc" at $15.99 share the
key "netflix:16".
"""

import math
import re


DEFAULT_PREFIX_LENGTH = 10

_PROCESSOR_PREFIX_RE = re.compile(r"^(paypal\s*\*|sq\s*\*|sp\s*\*|amzn\s*mktp|tst\s*\*|www\.)\s*", re.IGNORECASE)
_NAME_SUFFIX_RE = re.compile(r"(?:[\s,]+|\.)(?:inc|llc|corp|ltd|co|com|net|org|io)\.?$", re.IGNORECASE)

_DESCRIPTION_NOISE = [
    re.compile(r"\s+#?\d{4,}\s*$"),                       # store / reference numbers
    re.compile(r"\s+[A-Z]{2}\s*$"),                       # trailing state code
    re.compile(r"\s*\b(inc|llc|corp|ltd|co)\.?$", re.IGNORECASE),
    re.compile(r"\s*\b(autopay|monthly|subscription|recurring)$", re.IGNORECASE),
]

_LOWERCASE_WORDS = re.compile(r"\b(And|The|Of|For|Inc|Llc|Corp|Ltd|Co)\b")


def clean_transaction_description(description: str) -> str:
    """
    Uppercased, noise-free merchant text from a raw transaction description.

    >>> clean_transaction_description("SQ *BLUE BOTTLE COFFEE 12345")
    'BLUE BOTTLE COFFEE'
    """
    cleaned = (description or "").upper().strip()
    cleaned = _PROCESSOR_PREFIX_RE.sub("", cleaned)
    for pattern in _DESCRIPTION_NOISE:
        cleaned = pattern.sub("", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def format_merchant_name(cleaned: str) -> str:
    """Title-cases a cleaned description for display ("PG&E AUTOPAY" → "Pg&e Autopay")."""
    titled = " ".join(word[:1].upper() + word[1:] for word in cleaned.lower().split(" "))
    return _LOWERCASE_WORDS.sub(lambda m: m.group(0).lower(), titled)


def normalize_merchant_name(name: str, prefix_length: int = DEFAULT_PREFIX_LENGTH) -> str:
    """
    Grouping form of a merchant name: lowercase, processor prefixes and
    corporate/web suffixes removed, non-alphanumerics stripped, truncated.
    """
    text = (name or "").strip().lower()
    text = _PROCESSOR_PREFIX_RE.sub("", text)
    previous = None
    while previous != text:
        previous = text
        text = _NAME_SUFFIX_RE.sub("", text).strip()
    return re.sub(r"[^a-z0-9]", "", text)[:prefix_length]


def round_half_up(amount: float) -> int:
    """Rounds .5 away from zero for non-negative amounts (15.5 → 16)."""
    return int(math.floor(amount + 0.5))


def canonical_key(name: str, amount: float, prefix_length: int = DEFAULT_PREFIX_LENGTH) -> str:
    """Pure function of (merchant text, amount) used to group candidates."""
    return f"{normalize_merchant_name(name, prefix_length)}:{round_half_up(amount)}"
