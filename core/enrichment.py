"""
enrichment.py
--------------
Side-effect-free gap filling over ReconciledBills:

    1. Category fallback through the ordered rule table when still OTHER.
    2. Merchant logo reference by substring match (a miss is fine).
    3. Due date backfill: last observed date + nominal days for the frequency.

Returns new records via dataclasses.replace; inputs are never touched.
"""

import logging
from dataclasses import replace
from datetime import timedelta
from typing import Dict, List, Sequence

from core.models import BillCategory, ReconciledBill
from core.taxonomy import CategoryClassifier, MerchantLogoLookup
from config.config_loader import get_frequency_days

logger = logging.getLogger(__name__)


class BillEnricher:

    def __init__(
        self,
        classifier: CategoryClassifier | None = None,
        logos: MerchantLogoLookup | None = None,
        frequency_days: Dict[str, int] | None = None,
    ):
        self.classifier = classifier or CategoryClassifier()
        self.logos = logos or MerchantLogoLookup()
        self.frequency_days = frequency_days if frequency_days is not None else get_frequency_days()

    def enrich(self, bills: Sequence[ReconciledBill]) -> List[ReconciledBill]:
        enriched = [self.enrich_bill(bill) for bill in bills]
        backfilled = sum(1 for before, after in zip(bills, enriched) if before.due_date != after.due_date)
        logger.info(f"Enriched {len(enriched):,} bills ({backfilled:,} due dates backfilled).")
        return enriched

    def enrich_bill(self, bill: ReconciledBill) -> ReconciledBill:
        category = bill.category
        if category == BillCategory.OTHER:
            category = self.classifier.classify(bill.name, bill.description)

        due_date = bill.due_date
        if due_date is None and bill.frequency is not None and bill.last_observed is not None:
            due_date = bill.last_observed + timedelta(days=self.frequency_days[bill.frequency.value])

        return replace(
            bill,
            category=category,
            due_date=due_date,
            merchant_logo_ref=bill.merchant_logo_ref or self.logos.lookup(bill.name),
        )
