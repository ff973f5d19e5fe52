"""
errors.py
----------
Error taxonomy for a discovery run.

Only DiscoveryFailedError ever escapes the pipeline. The others are caught at
the boundary of the source or item that raised them and end up as strings in
DiscoveryResult.errors.
"""


class BillDiscoveryError(Exception):
    """Base class for all bill discovery errors."""


class SourceUnavailableError(BillDiscoveryError):
    """An email account or bank token did not respond."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Source unavailable: {source} ({reason})")


class ExtractionError(BillDiscoveryError):
    """A single message or transaction could not be parsed."""

    def __init__(self, item_id: str, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Extraction failed for {item_id}: {reason}")


class CandidateValidationError(BillDiscoveryError, ValueError):
    """A bill candidate violates a data model invariant (e.g. negative amount)."""


class DiscoveryFailedError(BillDiscoveryError):
    """No configured source could be reached; there is nothing to reconcile."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [])
        super().__init__(message)
