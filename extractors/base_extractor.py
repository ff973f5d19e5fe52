"""
base_extractor.py
------------------
Abstract base class for email bill extraction strategies.

A strategy turns (subject, sender, body) into structured bill fields plus a
confidence, or None when the email is not a bill. Shared logic, which is
clamping the confidence and building the ExtractionResult, lives here so it's
never duplicated.

Concrete strategies only need to implement:
    - _extract_fields(): strategy-specific parsing, returning a dict of fields
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from core.models import BillCategory


@dataclass(frozen=True)
class ExtractionResult:
    """Structured fields pulled from one email."""
    confidence: float                        # 0 – 100
    merchant: Optional[str] = None
    amount: Optional[float] = None
    due_date: Optional[date] = None
    category: Optional[BillCategory] = None
    description: Optional[str] = None


class BaseBillExtractor(ABC):
    """
    Pluggable extraction strategy.

    Subclasses implement _extract_fields(). This class handles result
    construction and keeps the confidence inside [0, 100].
    """

    name = "base"

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def extract(self, subject: str, sender: str, body: str) -> ExtractionResult | None:
        """
        Extract bill fields from one email.

        Returns:
            ExtractionResult, or None when the strategy finds no bill signal.
        """
        fields = self._extract_fields(subject or "", sender or "", body or "")
        if fields is None:
            return None

        confidence = max(0.0, min(float(fields.pop("confidence", 0.0)), 100.0))
        return ExtractionResult(confidence=confidence, **fields)

    # -------------------------------------------------------------------------
    # ABSTRACT METHODS: implement in each strategy
    # -------------------------------------------------------------------------

    @abstractmethod
    def _extract_fields(self, subject: str, sender: str, body: str) -> Dict[str, Any] | None:
        """
        Strategy-specific parsing.

        Returns:
            Dict with "confidence" and any of merchant, amount, due_date,
            category, description; or None for "not a bill".
        """
        ...
