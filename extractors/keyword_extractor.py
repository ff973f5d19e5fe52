"""
keyword_extractor.py
---------------------
Default extraction strategy: keyword and regex heuristics.

Confidence is additive over independent signals:

    subject looks like a bill         +20 per pattern (max 40)
    sender looks like a billing box   +15 per pattern (max 30)
    body contains a dollar amount     +20 (largest amount is taken)
    body contains a parseable due     +15
    text matches a category rule      +15
    text names a known merchant       +10

capped at 100. Good enough to rank inbox noise below real bills; anything
smarter can be plugged in behind BaseBillExtractor.
"""

import re
from typing import Any, Dict, Optional

import pandas as pd

from core.taxonomy import CategoryClassifier
from extractors.base_extractor import BaseBillExtractor


SUBJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bill.*ready",
        r"statement.*available",
        r"payment.*due",
        r"invoice.*\d+",
        r"your.*bill",
        r"monthly.*statement",
        r"payment.*reminder",
        r"account.*summary",
    )
]

SENDER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"noreply@", r"billing@", r"statements@", r"notices@", r"no-reply@", r"donotreply@")
]

AMOUNT_RE = re.compile(r"\$(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)")

DUE_DATE_PATTERNS = [
    re.compile(r"due\s+(?:date\s+)?(?:is\s+)?(?:on\s+)?(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"pay\s+by\s+(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"payment\s+due\s+(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"(\d{1,2}/\d{1,2}/\d{4})"),
    re.compile(r"(\d{4}-\d{2}-\d{2})"),
]

SUBJECT_WEIGHT, SUBJECT_CAP = 20, 40
SENDER_WEIGHT, SENDER_CAP = 15, 30
AMOUNT_SCORE = 20
DUE_DATE_SCORE = 15
CATEGORY_SCORE = 15
MERCHANT_SCORE = 10


def extract_amount(text: str) -> Optional[float]:
    """Largest dollar amount in the text, usually the bill total."""
    amounts = [float(m.replace(",", "")) for m in AMOUNT_RE.findall(text)]
    return max(amounts) if amounts else None


def extract_due_date(text: str):
    """First due-date-like expression that parses to a real date."""
    for pattern in DUE_DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        parsed = pd.to_datetime(match.group(1), errors="coerce")
        if not pd.isna(parsed):
            return parsed.date()
    return None


class KeywordBillExtractor(BaseBillExtractor):

    name = "keyword"

    def __init__(self, classifier: CategoryClassifier | None = None):
        self.classifier = classifier or CategoryClassifier()

    def _extract_fields(self, subject: str, sender: str, body: str) -> Dict[str, Any] | None:
        confidence = 0.0

        confidence += min(sum(SUBJECT_WEIGHT for p in SUBJECT_PATTERNS if p.search(subject)), SUBJECT_CAP)
        confidence += min(sum(SENDER_WEIGHT for p in SENDER_PATTERNS if p.search(sender)), SENDER_CAP)

        amount = extract_amount(body)
        if amount is not None:
            confidence += AMOUNT_SCORE

        due_date = extract_due_date(body)
        if due_date is not None:
            confidence += DUE_DATE_SCORE

        category = None
        merchant = None
        match = self.classifier.match(subject, sender, body)
        if match is not None:
            category = match.category
            confidence += CATEGORY_SCORE
            if match.merchant:
                merchant = match.merchant
                confidence += MERCHANT_SCORE

        if confidence == 0:
            return None

        return {
            "confidence": confidence,
            "merchant": merchant,
            "amount": amount,
            "due_date": due_date,
            "category": category,
            "description": subject or None,
        }
