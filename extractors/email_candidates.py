"""
email_candidates.py
--------------------
Adapter from fetched emails to email-sourced BillCandidates.

Runs the pluggable extraction strategy on each message, keeps results at or
above the email confidence bar, and fills the gaps the strategy left:
merchant from the sender domain, category from the rule table, amount 0.0.

One bad message never aborts the batch: its failure is logged, recorded,
and the loop moves on.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Sequence

import pandas as pd

from core.errors import CandidateValidationError, ExtractionError
from core.merchant import normalize_merchant_name
from core.models import BillCandidate, EmailAccount, EmailMessage, SourceMetadata, SourceType
from core.taxonomy import CategoryClassifier
from extractors.base_extractor import BaseBillExtractor
from extractors.keyword_extractor import KeywordBillExtractor
from config.config_loader import get_thresholds

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"<([^>]+)>")
_DOMAIN_PREFIX_RE = re.compile(r"^(noreply\.|no-reply\.|billing\.|statements?\.)")
_DOMAIN_SUFFIX_RE = re.compile(r"\.(com|org|net|edu|gov)$")


def extract_company_name(sender: str) -> str:
    """
    Best guess at the company behind a sender address.

    >>> extract_company_name("Netflix <info@mailer.netflix.com>")
    'Netflix'
    """
    if not sender:
        return "Unknown"

    match = _ADDRESS_RE.search(sender)
    address = match.group(1) if match else sender
    if "@" not in address:
        return "Unknown"

    domain = address.rsplit("@", 1)[1].strip().lower()
    domain = _DOMAIN_SUFFIX_RE.sub("", _DOMAIN_PREFIX_RE.sub("", domain))
    label = domain.split(".")[-1] if domain else ""
    if not label:
        return "Unknown"
    return label[:1].upper() + label[1:]


def _as_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = pd.to_datetime(value, errors="coerce")
    return None if pd.isna(parsed) else parsed.date()


class EmailCandidateExtractor:
    """
    Usage:
        extractor = EmailCandidateExtractor()
        candidates, errors = extractor.extract_candidates(messages, account)
    """

    def __init__(
        self,
        strategy: BaseBillExtractor | None = None,
        classifier: CategoryClassifier | None = None,
        thresholds: Dict[str, float] | None = None,
    ):
        self.classifier = classifier or CategoryClassifier()
        self.strategy = strategy or KeywordBillExtractor(self.classifier)
        thresholds = thresholds if thresholds is not None else get_thresholds()
        self.min_confidence = thresholds["email_min_confidence"]

    def extract_candidate(
        self, message: EmailMessage, account: EmailAccount | None = None
    ) -> BillCandidate | None:
        """
        Runs the strategy on one message.

        Message ids are only unique within a mailbox, so the candidate id and
        metadata carry the account id when one is given.

        Returns:
            BillCandidate if the strategy is confident enough, None otherwise.

        Raises:
            CandidateValidationError: the strategy produced impossible values.
        """
        result = self.strategy.extract(message.subject or "", message.sender or "", message.body or "")
        if result is None or result.confidence < self.min_confidence:
            return None

        merchant = result.merchant or extract_company_name(message.sender)
        category = result.category or self.classifier.classify(merchant, message.subject)
        received = _as_date(message.date)

        return BillCandidate(
            id=f"email_{account.account_id}_{message.id}" if account else f"email_{message.id}",
            source_type=SourceType.EMAIL,
            merchant_name_raw=merchant,
            normalized_merchant_key=normalize_merchant_name(merchant),
            amount=result.amount if result.amount is not None else 0.0,
            confidence=result.confidence,
            source_metadata=SourceMetadata(
                source_type=SourceType.EMAIL,
                email_id=message.id,
                email_subject=message.subject,
                sender=message.sender,
                account_ids=(account.account_id,) if account else (),
            ),
            observed_dates=(received,) if received else (),
            due_date_estimate=result.due_date,
            category=category,
            description=result.description,
        )

    def extract_candidates(
        self, messages: Sequence[EmailMessage], account: EmailAccount | None = None
    ) -> tuple[List[BillCandidate], List[str]]:
        """
        Extracts candidates from a batch of messages.

        Returns:
            (candidates, errors): one error string per message that failed
            validation or extraction.
        """
        candidates: List[BillCandidate] = []
        errors: List[str] = []
        label = (account.address or account.account_id) if account else "email"

        for message in messages:
            try:
                candidate = self.extract_candidate(message, account)
            except CandidateValidationError as e:
                logger.warning(f"Dropping invalid candidate from {label}: {e}")
                errors.append(str(e))
                continue
            except Exception as e:
                error = ExtractionError(message.id, str(e))
                logger.exception(f"{label}: {error}")
                errors.append(str(error))
                continue

            if candidate is not None:
                candidates.append(candidate)

        logger.info(f"{label}: {len(candidates):,} bill candidates from {len(messages):,} emails.")
        return candidates, errors
