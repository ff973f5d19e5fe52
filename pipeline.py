"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. EmailCandidateExtractor  →  email BillCandidates, one worker per mailbox
    2. RecurringBillDetector    →  bank BillCandidates, one worker per token
    3. BillDeduplicator         →  ReconciledBills (single pass, all candidates)
    4. BillEnricher             →  category / logo / due date gaps filled
    5. Statistics               →  DiscoveryResult

This is the single entry point for a discovery run. Everything else is
internal machinery.

Usage:
    from pipeline import BillDiscoveryPipeline

    pipeline = BillDiscoveryPipeline(email_client=gmail, bank_client=plaid)
    result = pipeline.run(email_accounts, bank_tokens, progress=print)
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Sequence

import pandas as pd

from core.deduplicator import BillDeduplicator
from core.enrichment import BillEnricher
from core.errors import DiscoveryFailedError, ExtractionError, SourceUnavailableError
from core.models import (
    BillCandidate,
    DiscoveryResult,
    DiscoveryStatistics,
    EmailAccount,
    ReconciledBill,
    SourceType,
)
from core.progress import ProgressCallback, ProgressChannel
from core.recurring_bill_detector import RecurringBillDetector
from core.taxonomy import CategoryClassifier
from extractors.email_candidates import EmailCandidateExtractor
from sources.clients import BankProviderClient, EmailProviderClient
from config.config_loader import get_pipeline_config

logger = logging.getLogger(__name__)

# Progress milestones; per-source events are spread between SCAN and SOURCES_DONE.
PROGRESS_SCAN = 5
PROGRESS_SOURCES_START = 10
PROGRESS_SOURCES_DONE = 80
PROGRESS_PROCESSING = 90
PROGRESS_DONE = 100

BILL_COLUMNS = [
    "id", "name", "amount", "due_date", "category", "confidence", "frequency",
    "last_observed", "merchant_logo_ref", "sources", "email_ids", "transaction_ids",
]


@dataclass
class SourceShard:
    """What one worker produced for one email account or bank token."""
    source_type: SourceType
    label: str
    candidates: List[BillCandidate] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    available: bool = True


def _mask_token(token: str) -> str:
    return f"bank token …{token[-4:]}" if len(token) > 4 else "bank token"


class BillDiscoveryPipeline:
    """
    End-to-end bill discovery.

    Collaborators are constructed by the caller and injected; the pipeline
    keeps no state between runs.
    """

    def __init__(
        self,
        email_client: EmailProviderClient | None = None,
        bank_client: BankProviderClient | None = None,
        email_extractor: EmailCandidateExtractor | None = None,
        detector: RecurringBillDetector | None = None,
        deduplicator: BillDeduplicator | None = None,
        enricher: BillEnricher | None = None,
        config: Dict[str, Any] | None = None,
        lookback_days: int | None = None,
        as_of: date | None = None,
    ):
        """
        Args:
            email_client: Fetches bill emails per account.
            bank_client: Lists accounts and transactions per access token.
            config: The pipeline config block. Defaults to config.yaml.
            lookback_days: Override the detector's default lookback window.
            as_of: Last day of the bank history window. Defaults to today;
                file exports pass their latest transaction date.
        """
        self.config = config if config is not None else get_pipeline_config()
        self.max_workers = self.config["max_workers"]
        self.poll_interval = self.config["poll_interval_seconds"]
        self.savings_per_duplicate = self.config["savings_per_duplicate"]

        classifier = CategoryClassifier()
        self.email_client = email_client
        self.bank_client = bank_client
        self.email_extractor = email_extractor or EmailCandidateExtractor(classifier=classifier)
        self.detector = detector or RecurringBillDetector(classifier=classifier)
        self.deduplicator = deduplicator or BillDeduplicator()
        self.enricher = enricher or BillEnricher(classifier=classifier)
        if lookback_days is not None:
            self.lookback_days = lookback_days
        else:
            self.lookback_days = self.detector.config["default_lookback_days"]
        self.as_of = as_of

        logger.info(
            f"Pipeline initialized. "
            f"Workers: {self.max_workers}. "
            f"Lookback: {self.lookback_days} days."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(
        self,
        email_accounts: Sequence[EmailAccount] = (),
        bank_tokens: Sequence[str] = (),
        progress: ProgressChannel | ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> DiscoveryResult:
        """
        Run a full discovery across every mailbox and bank token.

        Args:
            email_accounts: Connected mailboxes.
            bank_tokens: Bank access tokens.
            progress: A ProgressChannel, or a callback receiving ProgressEvents.
            cancel_event: Set it to stop waiting for outstanding sources.
            timeout: Seconds after which outstanding sources are abandoned.

        Returns:
            DiscoveryResult. On cancellation or timeout, the bills reconciled
            from the sources that did finish, with cancelled=True.

        Raises:
            DiscoveryFailedError: sources were configured but none responded.
        """
        channel = progress if isinstance(progress, ProgressChannel) else ProgressChannel(progress)
        deadline = time.monotonic() + timeout if timeout is not None else None

        units = [(SourceType.EMAIL, a) for a in email_accounts] + [(SourceType.BANK, t) for t in bank_tokens]
        logger.info(f"Discovery starting. Email accounts: {len(email_accounts)}. Bank tokens: {len(bank_tokens)}.")
        channel.emit(
            "scan",
            PROGRESS_SCAN,
            f"Scanning {len(email_accounts)} email accounts and {len(bank_tokens)} bank connections...",
        )

        # --- Stage 1: Fan out to sources ---
        shards, cancelled = self._collect(units, channel, cancel_event, deadline)
        errors = [e for shard in shards for e in shard.errors]

        if cancelled:
            message = f"Discovery cancelled: {len(units) - len(shards)} of {len(units)} sources did not finish"
            logger.warning(message)
            errors.append(message)
        elif units and not any(shard.available for shard in shards):
            channel.emit("failed", channel.current, "No bill source could be reached", is_complete=True)
            raise DiscoveryFailedError("No bill source could be reached", errors)

        raw_candidates = [c for shard in shards for c in shard.candidates]
        logger.info(f"Stage 1 complete. Raw candidates: {len(raw_candidates):,}. Errors: {len(errors)}.")

        # --- Stage 2: Deduplicate & enrich ---
        channel.emit("processing", PROGRESS_PROCESSING, "Processing and deduplicating results...")
        bills = self.enricher.enrich(self.deduplicator.deduplicate(raw_candidates))
        stats = self.calculate_stats(bills, raw_candidates)
        logger.info(f"Stage 2 complete. Bills: {len(bills):,}. Duplicates: {stats.duplicates_found:,}.")

        if cancelled:
            channel.emit("cancelled", PROGRESS_DONE, f"Discovery cancelled. Returning {len(bills)} bills", is_complete=True)
        else:
            channel.emit("complete", PROGRESS_DONE, f"Discovery complete! Found {len(bills)} bills", is_complete=True)

        return DiscoveryResult(bills=bills, stats=stats, errors=errors, cancelled=cancelled)

    def start(
        self,
        email_accounts: Sequence[EmailAccount] = (),
        bank_tokens: Sequence[str] = (),
        progress: ProgressChannel | ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
    ) -> "Future[DiscoveryResult]":
        """
        Runs run() on a background thread. Pair with ProgressChannel.stream()
        to follow progress while waiting on the returned Future.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bill-discovery-run")
        future = executor.submit(self.run, email_accounts, bank_tokens, progress, cancel_event, timeout)
        executor.shutdown(wait=False)
        return future

    def scan_email_account(
        self, account: EmailAccount, progress: ProgressChannel | ProgressCallback | None = None
    ) -> List[BillCandidate]:
        """Raw email candidates for a single mailbox."""
        channel = progress if isinstance(progress, ProgressChannel) else ProgressChannel(progress)
        channel.emit("email", 0, f"Connecting to {account.provider}...")

        shard = self._scan_email(account)
        if not shard.available:
            channel.emit("failed", channel.current, shard.errors[0], is_complete=True)
            raise DiscoveryFailedError(shard.errors[0], shard.errors)

        channel.emit("email", PROGRESS_DONE, f"Found {len(shard.candidates)} bills in {shard.label}", is_complete=True)
        return shard.candidates

    def analyze_bank_account(
        self, token: str, progress: ProgressChannel | ProgressCallback | None = None
    ) -> List[BillCandidate]:
        """Raw bank candidates for a single access token."""
        channel = progress if isinstance(progress, ProgressChannel) else ProgressChannel(progress)
        channel.emit("bank", 0, "Retrieving transaction history...")

        shard = self._analyze_bank(token)
        if not shard.available:
            channel.emit("failed", channel.current, shard.errors[0], is_complete=True)
            raise DiscoveryFailedError(shard.errors[0], shard.errors)

        channel.emit("bank", PROGRESS_DONE, f"Found {len(shard.candidates)} recurring bills", is_complete=True)
        return shard.candidates

    def calculate_stats(
        self, final_bills: Sequence[ReconciledBill], raw_candidates: Sequence[BillCandidate]
    ) -> DiscoveryStatistics:
        """
        Summary counts for a run. potential_savings assumes every duplicate
        is a redundant subscription worth savings_per_duplicate; it is a
        heuristic for the UI, not a financial figure.
        """
        duplicates = len(raw_candidates) - len(final_bills)
        return DiscoveryStatistics(
            total_bills_found=len(final_bills),
            email_bills_found=sum(1 for b in final_bills if SourceType.EMAIL in b.sources),
            bank_bills_found=sum(1 for b in final_bills if SourceType.BANK in b.sources),
            subscriptions_found=sum(1 for b in final_bills if b.is_recurring),
            duplicates_found=duplicates,
            potential_savings=round(duplicates * self.savings_per_duplicate, 2),
        )

    # -------------------------------------------------------------------------
    # INTERNAL: FAN-OUT
    # -------------------------------------------------------------------------

    def _collect(
        self,
        units: List[tuple],
        channel: ProgressChannel,
        cancel_event: threading.Event | None,
        deadline: float | None,
    ) -> tuple[List[SourceShard], bool]:
        """
        Runs one worker per source and gathers their shards.

        Only this thread touches `settled` and the progress channel, so
        progress stays ordered however the workers finish. Returns the
        settled shards in input order and whether the run was cut short.
        """
        if not units:
            return [], False

        settled: Dict[int, SourceShard] = {}
        cancelled = False
        span = PROGRESS_SOURCES_DONE - PROGRESS_SOURCES_START
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(units)), thread_name_prefix="bill-discovery"
        )
        try:
            futures = {
                executor.submit(self._run_unit, kind, source): index
                for index, (kind, source) in enumerate(units)
            }
            pending = set(futures)

            while pending:
                if (cancel_event is not None and cancel_event.is_set()) or (
                    deadline is not None and time.monotonic() >= deadline
                ):
                    cancelled = True
                    break

                wait_for = self.poll_interval
                if deadline is not None:
                    wait_for = max(0.0, min(wait_for, deadline - time.monotonic()))
                done, pending = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)

                for future in sorted(done, key=futures.get):
                    shard = future.result()
                    settled[futures[future]] = shard
                    channel.emit(
                        shard.source_type.value,
                        PROGRESS_SOURCES_START + span * len(settled) / len(units),
                        f"{shard.label}: {len(shard.candidates)} bills found"
                        if shard.available else f"{shard.label}: unavailable",
                    )
        finally:
            executor.shutdown(wait=not cancelled, cancel_futures=cancelled)

        return [settled[i] for i in sorted(settled)], cancelled

    def _run_unit(self, kind: SourceType, source: Any) -> SourceShard:
        if kind == SourceType.EMAIL:
            return self._scan_email(source)
        return self._analyze_bank(source)

    def _scan_email(self, account: EmailAccount) -> SourceShard:
        shard = SourceShard(SourceType.EMAIL, account.address or account.account_id)
        try:
            if self.email_client is None:
                raise RuntimeError("no email provider configured")
            messages = self.email_client.fetch_bill_emails(account)
        except Exception as e:
            return self._unavailable(shard, e)

        shard.candidates, shard.errors = self.email_extractor.extract_candidates(messages, account)
        return shard

    def _analyze_bank(self, token: str) -> SourceShard:
        shard = SourceShard(SourceType.BANK, _mask_token(token))
        end_date = self.as_of or date.today()
        start_date = end_date - timedelta(days=self.lookback_days)
        try:
            if self.bank_client is None:
                raise RuntimeError("no bank provider configured")
            accounts = self.bank_client.list_accounts(token)
            transactions = self.bank_client.list_transactions(token, start_date, end_date)
        except Exception as e:
            return self._unavailable(shard, e)

        if not transactions:
            logger.warning(f"{shard.label}: no transactions between {start_date} and {end_date}.")

        try:
            patterns = self.detector.detect(transactions, lookback_days=self.lookback_days, errors=shard.errors)
            shard.candidates = self.detector.build_candidates(patterns, accounts, errors=shard.errors)
        except Exception as e:
            error = ExtractionError(shard.label, str(e))
            logger.exception(str(error))
            shard.errors.append(str(error))
            return shard

        logger.info(
            f"{shard.label}: {len(transactions):,} transactions, {len(patterns)} recurring patterns, "
            f"{len(shard.candidates)} bill candidates."
        )
        return shard

    @staticmethod
    def _unavailable(shard: SourceShard, exc: Exception) -> SourceShard:
        error = SourceUnavailableError(shard.label, str(exc) or type(exc).__name__)
        logger.warning(str(error))
        shard.available = False
        shard.errors.append(str(error))
        return shard


def bills_to_frame(bills: Sequence[ReconciledBill]) -> pd.DataFrame:
    """
    Flattens bills into a DataFrame, highest confidence first.
    """
    if not bills:
        return pd.DataFrame(columns=BILL_COLUMNS)

    rows = []
    for b in bills:
        rows.append({
            "id": b.id,
            "name": b.name,
            "amount": b.amount,
            "due_date": b.due_date.isoformat() if b.due_date else None,
            "category": b.category.value,
            "confidence": b.confidence,
            "frequency": b.frequency.value if b.frequency else None,
            "last_observed": b.last_observed.isoformat() if b.last_observed else None,
            "merchant_logo_ref": b.merchant_logo_ref,
            "sources": "|".join(sorted(s.value for s in b.sources)),
            "email_ids": "|".join(b.email_ids),
            "transaction_ids": "|".join(b.transaction_ids),
        })

    df = pd.DataFrame(rows, columns=BILL_COLUMNS)
    return df.sort_values(["confidence", "id"], ascending=[False, True]).reset_index(drop=True)
