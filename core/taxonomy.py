"""
taxonomy.py
------------
Merchant taxonomy lookup layer.

Loads the ordered category_rules table and the merchant_logos table from
config.yaml. Category inference is one explicit, ordered rule table: the
first rule whose keyword, regex pattern or known merchant name appears in the
text wins, and anything unmatched falls back to BillCategory.OTHER.

Taxonomy updates happen in config.yaml; no code changes required.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.models import BillCategory
from config.config_loader import get_category_rules, get_merchant_logos


@dataclass(frozen=True)
class CategoryRule:
    category: BillCategory
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern, ...]
    merchants: tuple[str, ...]

    def matches(self, text: str) -> bool:
        return (
            any(k in text for k in self.keywords)
            or any(p.search(text) for p in self.patterns)
            or self.match_merchant(text) is not None
        )

    def match_merchant(self, text: str) -> Optional[str]:
        """Returns the first known merchant name contained in the text."""
        for merchant in self.merchants:
            if merchant.lower() in text:
                return merchant
        return None


@dataclass(frozen=True)
class CategoryMatch:
    category: BillCategory
    merchant: Optional[str] = None   # Known merchant name, if one was named.


class CategoryClassifier:
    """
    Ordered keyword / pattern / merchant-substring classifier.

    Built once at init from the config rule table. Thread-safe for reads.
    """

    def __init__(self, rules: list[Dict[str, Any]] | None = None):
        self._rules: list[CategoryRule] = []
        self._load_rules(rules if rules is not None else get_category_rules())

    def _load_rules(self, rules: list[Dict[str, Any]]) -> None:
        """Builds the rule list from config, preserving table order."""
        for entry in rules:
            self._rules.append(
                CategoryRule(
                    category=BillCategory(entry["category"]),
                    keywords=tuple(k.lower() for k in entry.get("keywords", [])),
                    patterns=tuple(re.compile(p, re.IGNORECASE) for p in entry.get("patterns", [])),
                    merchants=tuple(entry.get("merchants", [])),
                )
            )

    def match(self, *texts: Optional[str]) -> Optional[CategoryMatch]:
        """
        Finds the first rule matching the combined texts.

        Returns:
            CategoryMatch, or None when no rule applies.
        """
        combined = " ".join(t for t in texts if t).lower()
        if not combined:
            return None
        for rule in self._rules:
            if rule.matches(combined):
                return CategoryMatch(rule.category, rule.match_merchant(combined))
        return None

    def classify(self, merchant: Optional[str], description: Optional[str] = None) -> BillCategory:
        """Category for a merchant (+ optional description); OTHER if nothing matches."""
        result = self.match(merchant, description)
        return result.category if result else BillCategory.OTHER

    def is_known_biller(self, merchant: str) -> bool:
        return self.match(merchant) is not None

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"CategoryClassifier(rules={[r.category.value for r in self._rules]})"


class MerchantLogoLookup:
    """
    Best-effort substring match from merchant name to a logo reference.
    A miss is a normal outcome and returns None.
    """

    def __init__(self, logos: Dict[str, str] | None = None):
        table = logos if logos is not None else get_merchant_logos()
        self._logos = [(key.lower(), ref) for key, ref in table.items()]

    def lookup(self, merchant_name: Optional[str]) -> Optional[str]:
        name = (merchant_name or "").lower()
        for key, ref in self._logos:
            if key in name:
                return ref
        return None

    def __len__(self) -> int:
        return len(self._logos)
