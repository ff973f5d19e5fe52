"""
recurring_bill_detector.py
---------------------------
Recurring bill detection over bank transaction history.

Answers one question per merchant:

    "Do this merchant's charges repeat on a weekly, monthly, quarterly or
     yearly rhythm, and when is the next one due?"

Output: a RecurringPattern per qualifying merchant group, and from those the
bank-sourced BillCandidates the pipeline reconciles with email findings.

Design decisions:
    - Grouping key is the normalized merchant name only. Amounts are allowed
      to drift (utility bills do); drift lowers confidence instead of
      splitting the group.
    - Frequency comes from the mean inter-transaction gap checked against
      fixed tolerance bands, plus a minimum share of gaps inside the band.
    - All thresholds, bands and weights are read from config.yaml.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from core.errors import CandidateValidationError
from core.merchant import clean_transaction_description, format_merchant_name, normalize_merchant_name
from core.models import (
    BankAccount,
    BillCandidate,
    BillFrequency,
    RecurringPattern,
    SourceMetadata,
    SourceType,
    Transaction,
)
from core.taxonomy import CategoryClassifier
from config.config_loader import get_detection_config, get_thresholds

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = [
    "transaction_id", "account_id", "transaction_date", "amount",
    "description", "merchant_hint", "category",
]


def transactions_to_frame(transactions: Iterable[Transaction]) -> pd.DataFrame:
    """Flattens Transaction records into the detector's input DataFrame."""
    rows = [
        {
            "transaction_id": t.id,
            "account_id": t.account_id,
            "transaction_date": t.date,
            "amount": t.amount,
            "description": t.description,
            "merchant_hint": t.merchant_hint,
            "category": t.category,
        }
        for t in transactions
    ]
    return pd.DataFrame(rows, columns=REQUIRED_COLUMNS)


class RecurringBillDetector:
    """
    Detects recurring billing patterns in transaction data.

    Usage:
        detector = RecurringBillDetector()
        patterns = detector.detect(transactions)
        candidates = detector.build_candidates(patterns, accounts)
    """

    def __init__(
        self,
        config: Dict[str, Any] | None = None,
        thresholds: Dict[str, float] | None = None,
        classifier: CategoryClassifier | None = None,
    ):
        self.config = config if config is not None else get_detection_config()
        self.min_occurrences = self.config["min_occurrences"]
        self.min_fit_ratio = self.config["min_fit_ratio"]
        self.frequency_bands = self.config["frequency_bands"]
        self.confidence_weights = self.config["confidence"]
        thresholds = thresholds if thresholds is not None else get_thresholds()
        self.bank_min_confidence = thresholds["bank_min_confidence"]
        self.classifier = classifier or CategoryClassifier()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(
        self,
        transactions: pd.DataFrame | Sequence[Transaction],
        lookback_days: int | None = None,
        errors: List[str] | None = None,
    ) -> List[RecurringPattern]:
        """
        Run recurring bill detection.

        Args:
            transactions: DataFrame with REQUIRED_COLUMNS, or Transaction records.
            lookback_days: Override the default lookback window. If None,
                uses config default.
            errors: Optional list collecting one message per skipped transaction.

        Returns:
            List of RecurringPattern, highest confidence first. Groups with
            fewer than min_occurrences transactions never produce a pattern.
        """
        if not isinstance(transactions, pd.DataFrame):
            transactions = transactions_to_frame(transactions)

        df = self._prepare(transactions, lookback_days, errors)

        if df.empty:
            return []

        results: List[RecurringPattern] = []
        for merchant_key, group in df.groupby("merchant_key", sort=True):
            # Two points are the least that define an interval.
            if len(group) < self.min_occurrences:
                continue

            pattern = self._build_pattern(merchant_key, group)
            if pattern is not None:
                results.append(pattern)

        results.sort(key=lambda p: (-p.confidence, p.merchant_key))
        return results

    def build_candidates(
        self,
        patterns: Sequence[RecurringPattern],
        accounts: Sequence[BankAccount] = (),
        errors: List[str] | None = None,
    ) -> List[BillCandidate]:
        """
        Turns patterns at or above the bank confidence bar into BillCandidates.

        The bar is higher than the email one: a pattern is an inference, an
        email states the bill explicitly.
        """
        candidates: List[BillCandidate] = []

        for pattern in patterns:
            if pattern.confidence < self.bank_min_confidence:
                logger.debug(
                    f"Pattern {pattern.merchant_key} below bank threshold "
                    f"({pattern.confidence:.1f} < {self.bank_min_confidence})."
                )
                continue

            account_name = next(
                (a.name for a in accounts if a.id in pattern.account_ids), None
            )
            try:
                candidates.append(
                    BillCandidate(
                        id=f"bank_{pattern.merchant_key}_{pattern.transaction_ids[-1]}",
                        source_type=SourceType.BANK,
                        merchant_name_raw=pattern.merchant_name,
                        normalized_merchant_key=pattern.merchant_key,
                        amount=pattern.mean_amount,
                        confidence=pattern.confidence,
                        source_metadata=SourceMetadata(
                            source_type=SourceType.BANK,
                            transaction_ids=pattern.transaction_ids,
                            account_ids=pattern.account_ids,
                            account_name=account_name,
                        ),
                        observed_dates=pattern.dates,
                        due_date_estimate=pattern.next_predicted_date,
                        category=pattern.category,
                        frequency=pattern.inferred_frequency,
                    )
                )
            except CandidateValidationError as e:
                logger.warning(f"Dropping invalid bank candidate: {e}")
                if errors is not None:
                    errors.append(str(e))

        return candidates

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(
        self, transactions: pd.DataFrame, lookback_days: int | None, errors: List[str] | None
    ) -> pd.DataFrame:
        """
        Validates input, parses dates and amounts, derives the merchant key
        and applies the lookback window filter.
        """
        missing = [c for c in REQUIRED_COLUMNS if c not in transactions.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        df = transactions.copy()
        if df.empty:
            return df

        df["transaction_id"] = df["transaction_id"].astype(str)
        df["transaction_date"] = pd.to_datetime(df["transaction_date"], errors="coerce").dt.normalize()
        df["amount"] = pd.to_numeric(df["amount"], errors="coerce").abs()
        df["merchant_hint"] = df["merchant_hint"].fillna("").astype(str).str.strip()
        df["description"] = df["description"].fillna("").astype(str)
        df["category"] = df["category"].fillna("").astype(str)

        source_text = df["merchant_hint"].where(df["merchant_hint"] != "", df["description"])
        df["merchant_clean"] = source_text.map(clean_transaction_description)
        df["merchant_key"] = df["merchant_clean"].map(normalize_merchant_name)

        # A transaction without a usable date, amount or merchant is skipped, not fatal.
        unusable = df["transaction_date"].isna() | df["amount"].isna() | (df["merchant_key"] == "")
        for txn_id in df.loc[unusable, "transaction_id"]:
            message = f"Skipped unparseable transaction {txn_id}"
            logger.warning(message)
            if errors is not None:
                errors.append(message)
        df = df[~unusable]

        if df.empty:
            return df

        # Apply lookback window
        if lookback_days is None:
            lookback_days = self.config["default_lookback_days"]

        cutoff = df["transaction_date"].max() - pd.Timedelta(days=lookback_days)
        df = df[df["transaction_date"] >= cutoff].copy()

        # Sort by merchant + date for gap calculations
        df = df.sort_values(["merchant_key", "transaction_date", "transaction_id"]).reset_index(drop=True)

        return df

    # -------------------------------------------------------------------------
    # INTERNAL: PATTERN CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_pattern(self, merchant_key: str, group: pd.DataFrame) -> RecurringPattern | None:
        """
        Builds a RecurringPattern from a single merchant group.

        Returns None if the gaps do not fit any frequency band (the payments
        exist but are not regular enough to be a bill).
        """
        dates = group["transaction_date"].values
        gaps = np.diff(dates).astype("timedelta64[D]").astype(float)

        match = self._classify_frequency(gaps)
        if match is None:
            logger.debug(f"Merchant {merchant_key}: gaps {gaps.tolist()} fit no frequency band.")
            return None
        frequency, band = match

        amounts = group["amount"].values.astype(float)
        mean_amt = float(np.mean(amounts))
        amount_cv = float(np.std(amounts)) / mean_amt if mean_amt > 0 else 0.0
        gap_std = float(np.std(gaps))

        merchant_name = self._display_name(group)
        category_match = self.classifier.match(merchant_name, group["merchant_clean"].iloc[0])
        known_biller = category_match is not None
        if category_match is None:
            category_match = self.classifier.match(" ".join(group["category"].unique()))

        confidence = self._compute_confidence(
            occurrences=len(group),
            gap_std=gap_std,
            tolerance_days=band["tolerance_days"],
            amount_cv=amount_cv,
            known_biller=known_biller,
        )

        last_seen = pd.Timestamp(dates[-1]).date()
        return RecurringPattern(
            merchant_key=merchant_key,
            merchant_name=merchant_name,
            dates=tuple(pd.Timestamp(d).date() for d in dates),
            amounts=tuple(round(float(a), 2) for a in amounts),
            transaction_ids=tuple(group["transaction_id"].tolist()),
            account_ids=tuple(sorted(set(group["account_id"].astype(str)))),
            inferred_frequency=frequency,
            next_predicted_date=last_seen + timedelta(days=band["days"]),
            confidence=confidence,
            category=category_match.category if category_match else None,
        )

    @staticmethod
    def _display_name(group: pd.DataFrame) -> str:
        """Most common merchant hint, else the title-cased cleaned description."""
        hints = group["merchant_hint"]
        hints = hints[hints != ""]
        if not hints.empty:
            return str(hints.mode().iloc[0])
        return format_merchant_name(group["merchant_clean"].iloc[0])

    # -------------------------------------------------------------------------
    # INTERNAL: FREQUENCY & CONFIDENCE
    # -------------------------------------------------------------------------

    def _classify_frequency(self, gaps: np.ndarray) -> tuple[BillFrequency, Dict[str, int]] | None:
        """
        Picks the first band whose window holds the mean gap and at least
        min_fit_ratio of the individual gaps.
        """
        if len(gaps) == 0:
            return None

        mean_gap = float(np.mean(gaps))
        for name, band in self.frequency_bands.items():
            low = band["days"] - band["tolerance_days"]
            high = band["days"] + band["tolerance_days"]
            if not (low <= mean_gap <= high):
                continue
            fit_ratio = float(np.mean((gaps >= low) & (gaps <= high)))
            if fit_ratio >= self.min_fit_ratio:
                return BillFrequency(name), band

        return None

    def _compute_confidence(
        self,
        occurrences: int,
        gap_std: float,
        tolerance_days: float,
        amount_cv: float,
        known_biller: bool,
    ) -> float:
        """
        confidence = clamp(base + min(n * per_occurrence, cap) + biller bonus
                           - interval penalty - amount penalty, 0, 100)

        Both penalties grow with spread, so tighter series score higher.
        """
        w = self.confidence_weights

        occurrence_bonus = min(occurrences * w["per_occurrence"], w["max_occurrence_bonus"])
        biller_bonus = w["known_biller_bonus"] if known_biller else 0

        interval_penalty = min(w["interval_weight"] * gap_std / tolerance_days, w["max_interval_penalty"])
        amount_penalty = min(w["amount_weight"] * amount_cv, w["max_amount_penalty"])

        score = w["base"] + occurrence_bonus + biller_bonus - interval_penalty - amount_penalty
        return round(max(0.0, min(score, 100.0)), 2)
