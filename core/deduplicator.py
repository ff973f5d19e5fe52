"""
deduplicator.py
----------------
Collapses raw BillCandidates into the minimal set of ReconciledBills.

Candidates are grouped by canonical key (normalized merchant prefix + rounded
amount). Each group becomes one ReconciledBill through a commutative
reduction: every field is picked by ranking the group's candidates on their
own attributes, never on the order they arrived in.

Ranking: highest confidence first, email before bank on a tie, then
candidate id, then candidate content. Field policy:

    amount       highest-ranked email above the trust threshold, else the
                 highest-ranked candidate
    due date,    highest-ranked candidate that supplies a value
    category,
    frequency
    confidence   ConfidenceScorer over the best email and best bank
                 confidence, corroborated when both sources are present
                 only; two candidates from the same source sharing a key
                 are a collision, not corroboration
    metadata     set union of every candidate's metadata

Reconciled bills fed back in are flattened to their candidates, so
deduplicate() is idempotent.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.confidence import ConfidenceScorer
from core.merchant import canonical_key
from core.models import BillCandidate, BillCategory, ReconciledBill, SourceType
from config.config_loader import get_dedup_config, get_thresholds

logger = logging.getLogger(__name__)


class BillDeduplicator:
    """
    Usage:
        dedup = BillDeduplicator()
        bills = dedup.deduplicate(email_candidates + bank_candidates)
    """

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        thresholds: Dict[str, float] | None = None,
        scorer: ConfidenceScorer | None = None,
    ):
        self.config = config if config is not None else get_dedup_config()
        self.prefix_length = self.config["merchant_prefix_length"]
        thresholds = thresholds if thresholds is not None else get_thresholds()
        self.email_amount_trust = thresholds["email_amount_trust"]
        self.scorer = scorer or ConfidenceScorer()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def key_for(self, candidate: BillCandidate) -> str:
        return canonical_key(candidate.merchant_name_raw, candidate.amount, self.prefix_length)

    def deduplicate(self, items: Iterable[BillCandidate | ReconciledBill]) -> List[ReconciledBill]:
        """
        Groups candidates by canonical key and merges each group.

        Args:
            items: BillCandidates, ReconciledBills (flattened to their
                candidates), or a mix of both.

        Returns:
            ReconciledBills sorted by canonical key.
        """
        candidates = self._flatten(items)

        groups: Dict[str, List[BillCandidate]] = {}
        for candidate in candidates:
            groups.setdefault(self.key_for(candidate), []).append(candidate)

        bills = [self.merge_group(key, group) for key, group in sorted(groups.items())]

        logger.info(
            f"Deduplicated {len(candidates):,} candidates into {len(bills):,} bills "
            f"({len(candidates) - len(bills):,} duplicates)."
        )
        return bills

    def merge(self, first: BillCandidate, second: BillCandidate) -> ReconciledBill:
        """Merges two candidates that share a canonical key. merge(a, b) == merge(b, a)."""
        key = self.key_for(first)
        if self.key_for(second) != key:
            raise ValueError(
                f"Cannot merge candidates with different keys: {key} vs {self.key_for(second)}"
            )
        return self.merge_group(key, [first, second])

    def merge_group(self, key: str, group: Sequence[BillCandidate]) -> ReconciledBill:
        """Reduces one canonical-key group to a ReconciledBill."""
        if not group:
            raise ValueError(f"Empty candidate group for key {key}")

        ranked = sorted(set(group), key=BillCandidate.rank_key)
        primary = ranked[0]
        emails = [c for c in ranked if c.source_type == SourceType.EMAIL]
        banks = [c for c in ranked if c.source_type == SourceType.BANK]

        trusted_email = next((c for c in emails if c.confidence > self.email_amount_trust), None)
        amount = (trusted_email or primary).amount

        best_email = emails[0].confidence if emails else 0.0
        best_bank = banks[0].confidence if banks else 0.0
        confidence = self.scorer.score(best_email, best_bank, corroborated=bool(emails and banks))

        categories = [c.category for c in ranked if c.category and c.category != BillCategory.OTHER]
        observed = [d for c in ranked for d in c.observed_dates]
        metadata = sorted({c.source_metadata for c in ranked}, key=lambda m: m.sort_key())

        return ReconciledBill(
            id=f"bill_{key}",
            canonical_key=key,
            name=primary.merchant_name_raw,
            amount=amount,
            category=categories[0] if categories else BillCategory.OTHER,
            confidence=confidence,
            candidates=tuple(ranked),
            source_metadata=tuple(metadata),
            due_date=_first_value(c.due_date_estimate for c in ranked),
            frequency=_first_value(c.frequency for c in ranked),
            last_observed=max(observed) if observed else None,
            description=_first_value(c.description for c in ranked),
        )

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _flatten(items: Iterable[BillCandidate | ReconciledBill]) -> List[BillCandidate]:
        """Unique candidates in rank order, unpacking any ReconciledBills."""
        seen = set()
        for item in items:
            if isinstance(item, ReconciledBill):
                seen.update(item.candidates)
            else:
                seen.add(item)
        return sorted(seen, key=BillCandidate.rank_key)


def _first_value(values: Iterable[Optional[Any]]) -> Optional[Any]:
    return next((v for v in values if v is not None), None)
