"""
clients.py
-----------
Contracts for the external collaborators the engine consumes.

Provider specifics (Gmail, Outlook, Plaid, OAuth token refresh) live behind
these interfaces and outside this package. Implementations are constructed by
the caller and injected into BillDiscoveryPipeline.

Any exception raised by a client is treated as the whole source being
unavailable for this run.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import List

from core.models import BankAccount, EmailAccount, EmailMessage, Transaction


class EmailProviderClient(ABC):

    @abstractmethod
    def fetch_bill_emails(self, account: EmailAccount) -> List[EmailMessage]:
        """Bill-looking emails for one connected mailbox, decoded to text."""
        ...


class BankProviderClient(ABC):

    @abstractmethod
    def list_accounts(self, token: str) -> List[BankAccount]:
        """Accounts reachable with one access token."""
        ...

    @abstractmethod
    def list_transactions(self, token: str, start_date: date, end_date: date) -> List[Transaction]:
        """
        Transactions in [start_date, end_date] for every account behind the
        token. Amounts are absolute outgoing spend.
        """
        ...
