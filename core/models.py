"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- EmailMessage / Transaction / accounts: raw records handed over by the
  source collaborators.

- BillCandidate: a single-source, unverified detection of a possible bill.
  Produced by the email extractor and the recurrence detector.

- RecurringPattern: intermediate output of the recurrence detector, turned
  into a bank BillCandidate straight away.

- ReconciledBill: the merged record for one real-world obligation. Produced
  by the deduplicator, copied (never mutated) by enrichment.

- DiscoveryStatistics / DiscoveryResult / ProgressEvent: what the pipeline
  hands back to the caller.

Every record is frozen: a run builds new objects instead of editing old ones.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional

from core.errors import CandidateValidationError
from core.merchant import canonical_key


class SourceType(str, Enum):
    EMAIL = "email"
    BANK = "bank"


class BillFrequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class BillCategory(str, Enum):
    UTILITIES = "utilities"
    ENTERTAINMENT = "entertainment"
    SOFTWARE = "software"
    INSURANCE = "insurance"
    TELECOM = "telecom"
    FINANCE = "finance"
    OTHER = "other"


# Lower value wins a confidence tie during merge.
SOURCE_PRIORITY = {SourceType.EMAIL: 0, SourceType.BANK: 1}


# =============================================================================
# SOURCE RECORDS
# =============================================================================

@dataclass(frozen=True)
class EmailAccount:
    """A connected mailbox. Token handling belongs to the provider client."""
    account_id: str
    provider: str = "gmail"           # "gmail" | "outlook" | ...
    address: str = ""


@dataclass(frozen=True)
class EmailMessage:
    """One fetched email, already decoded to plain text."""
    id: str
    sender: str
    subject: str
    body: str
    date: Optional[datetime] = None


@dataclass(frozen=True)
class BankAccount:
    id: str
    name: str


@dataclass(frozen=True)
class Transaction:
    """
    One outgoing bank/card transaction. `amount` is the absolute value of the
    spend; providers that sign outflows negatively must be normalized first.
    """
    id: str
    account_id: str
    date: date
    amount: float
    description: str
    merchant_hint: Optional[str] = None
    category: Optional[str] = None


# =============================================================================
# CANDIDATES & PATTERNS
# =============================================================================

@dataclass(frozen=True)
class SourceMetadata:
    """Provenance of one candidate: which email or which transactions."""
    source_type: SourceType
    email_id: Optional[str] = None
    email_subject: Optional[str] = None
    sender: Optional[str] = None
    transaction_ids: tuple[str, ...] = ()
    account_ids: tuple[str, ...] = ()
    account_name: Optional[str] = None

    def sort_key(self) -> tuple:
        return (
            SOURCE_PRIORITY[self.source_type],
            self.email_id or "",
            self.transaction_ids,
            self.account_ids,
            self.email_subject or "",
            self.sender or "",
            self.account_name or "",
        )

    def to_dict(self) -> dict:
        return {
            "source_type": self.source_type.value,
            "email_id": self.email_id,
            "email_subject": self.email_subject,
            "sender": self.sender,
            "transaction_ids": list(self.transaction_ids),
            "account_ids": list(self.account_ids),
            "account_name": self.account_name,
        }


@dataclass(frozen=True)
class BillCandidate:
    """
    A single-source detection of a possible bill.

    Validated on construction: a candidate that breaks an invariant never
    exists, the caller gets a CandidateValidationError instead.
    """

    id: str
    source_type: SourceType
    merchant_name_raw: str
    normalized_merchant_key: str
    amount: float
    confidence: float
    source_metadata: SourceMetadata
    observed_dates: tuple[date, ...] = ()
    due_date_estimate: Optional[date] = None
    category: Optional[BillCategory] = None
    frequency: Optional[BillFrequency] = None
    description: Optional[str] = None

    def __post_init__(self):
        if not self.merchant_name_raw or not self.merchant_name_raw.strip():
            raise CandidateValidationError(f"Candidate {self.id}: empty merchant name")
        if self.amount is None or math.isnan(self.amount) or self.amount < 0:
            raise CandidateValidationError(f"Candidate {self.id}: invalid amount {self.amount!r}")
        if self.confidence is None or not (0 <= self.confidence <= 100):
            raise CandidateValidationError(
                f"Candidate {self.id}: confidence {self.confidence!r} outside [0, 100]"
            )
        if self.source_metadata.source_type != self.source_type:
            raise CandidateValidationError(
                f"Candidate {self.id}: metadata source {self.source_metadata.source_type.value} "
                f"does not match {self.source_type.value}"
            )

    @property
    def canonical_key(self) -> str:
        return canonical_key(self.merchant_name_raw, self.amount)

    @property
    def last_observed(self) -> Optional[date]:
        return max(self.observed_dates) if self.observed_dates else None

    def rank_key(self) -> tuple:
        """
        Total order used by the merge: highest confidence first, email before
        bank on a tie, then candidate id, then content.
        """
        return (
            -self.confidence,
            SOURCE_PRIORITY[self.source_type],
            self.id,
            self.source_metadata.sort_key(),
            self.merchant_name_raw,
            self.amount,
            self.description or "",
            self.observed_dates,
        )


@dataclass(frozen=True)
class RecurringPattern:
    """Periodic billing behaviour inferred from one merchant's transactions."""

    merchant_key: str
    merchant_name: str
    dates: tuple[date, ...]
    amounts: tuple[float, ...]
    transaction_ids: tuple[str, ...]
    account_ids: tuple[str, ...]
    inferred_frequency: BillFrequency
    next_predicted_date: date
    confidence: float
    category: Optional[BillCategory] = None

    @property
    def occurrence_count(self) -> int:
        return len(self.dates)

    @property
    def mean_amount(self) -> float:
        return round(sum(self.amounts) / len(self.amounts), 2)

    @property
    def last_seen(self) -> date:
        return self.dates[-1]


# =============================================================================
# RECONCILED OUTPUT
# =============================================================================

@dataclass(frozen=True)
class ReconciledBill:
    """
    Final record for one real-world obligation, merged from every candidate
    that shares its canonical key.
    """

    id: str
    canonical_key: str
    name: str
    amount: float
    category: BillCategory
    confidence: float
    candidates: tuple[BillCandidate, ...]
    source_metadata: tuple[SourceMetadata, ...]
    due_date: Optional[date] = None
    frequency: Optional[BillFrequency] = None
    last_observed: Optional[date] = None
    merchant_logo_ref: Optional[str] = None
    description: Optional[str] = None

    @property
    def sources(self) -> frozenset[SourceType]:
        return frozenset(c.source_type for c in self.candidates)

    @property
    def is_corroborated(self) -> bool:
        return len(self.sources) > 1

    @property
    def is_recurring(self) -> bool:
        return self.frequency is not None

    @property
    def email_ids(self) -> list[str]:
        return [m.email_id for m in self.source_metadata if m.email_id]

    @property
    def transaction_ids(self) -> list[str]:
        return [t for m in self.source_metadata for t in m.transaction_ids]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "canonical_key": self.canonical_key,
            "name": self.name,
            "amount": self.amount,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "category": self.category.value,
            "confidence": self.confidence,
            "frequency": self.frequency.value if self.frequency else None,
            "last_observed": self.last_observed.isoformat() if self.last_observed else None,
            "merchant_logo_ref": self.merchant_logo_ref,
            "description": self.description,
            "sources": sorted(s.value for s in self.sources),
            "candidate_ids": [c.id for c in self.candidates],
            "source_metadata": [m.to_dict() for m in self.source_metadata],
        }


@dataclass(frozen=True)
class DiscoveryStatistics:
    total_bills_found: int = 0
    email_bills_found: int = 0
    bank_bills_found: int = 0
    subscriptions_found: int = 0
    duplicates_found: int = 0
    potential_savings: float = 0.0   # Heuristic estimate, not a financial figure.

    def to_dict(self) -> dict:
        return {
            "total_bills_found": self.total_bills_found,
            "email_bills_found": self.email_bills_found,
            "bank_bills_found": self.bank_bills_found,
            "subscriptions_found": self.subscriptions_found,
            "duplicates_found": self.duplicates_found,
            "potential_savings": self.potential_savings,
        }


@dataclass
class DiscoveryResult:
    """What one discovery run returns to the caller."""
    bills: list[ReconciledBill]
    stats: DiscoveryStatistics
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "bills": [b.to_dict() for b in self.bills],
            "stats": self.stats.to_dict(),
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class ProgressEvent:
    step: str                        # "scan" | "email" | "bank" | "processing" | "complete" | ...
    progress: int                    # 0 – 100, never decreasing within a run
    message: str
    is_complete: bool = False
