"""
static_clients.py
------------------
In-memory provider clients, for the CLI (file exports) and for tests.

Emails load from a JSON file shaped like:

    {"accounts": [{"account_id": "...", "provider": "gmail", "address": "..."}],
     "messages": {"<account_id>": [{"id": "...", "from": "...", "subject": "...",
                                    "body": "...", "date": "2024-03-01"}]}}

Transactions load from a CSV with columns transaction_id, account_id,
transaction_date, amount, description and optionally merchant_hint, category,
account_name, token. Rows without a token belong to the "default" token.
"""

import json
import logging
from datetime import date
from typing import Dict, List, Mapping, Sequence

import pandas as pd

from core.models import BankAccount, EmailAccount, EmailMessage, Transaction
from sources.clients import BankProviderClient, EmailProviderClient

logger = logging.getLogger(__name__)

DEFAULT_TOKEN = "default"


class StaticEmailProvider(EmailProviderClient):

    def __init__(self, messages: Mapping[str, Sequence[EmailMessage]]):
        self._messages = {k: list(v) for k, v in messages.items()}

    def fetch_bill_emails(self, account: EmailAccount) -> List[EmailMessage]:
        if account.account_id not in self._messages:
            raise ConnectionError(f"Unknown email account {account.account_id}")
        return list(self._messages[account.account_id])

    @classmethod
    def from_json(cls, path: str) -> tuple["StaticEmailProvider", List[EmailAccount]]:
        """Loads a provider and its accounts from a JSON export."""
        with open(path, "r") as f:
            payload = json.load(f)

        accounts = [
            EmailAccount(
                account_id=str(a["account_id"]),
                provider=a.get("provider", "gmail"),
                address=a.get("address", ""),
            )
            for a in payload.get("accounts", [])
        ]
        messages = {
            str(account_id): [
                EmailMessage(
                    id=str(m["id"]),
                    sender=m.get("from", ""),
                    subject=m.get("subject", ""),
                    body=m.get("body", ""),
                    date=pd.to_datetime(m["date"]).to_pydatetime() if m.get("date") else None,
                )
                for m in items
            ]
            for account_id, items in payload.get("messages", {}).items()
        }
        for account in accounts:
            messages.setdefault(account.account_id, [])

        logger.info(f"Loaded {sum(len(v) for v in messages.values()):,} emails for {len(accounts)} accounts from {path}")
        return cls(messages), accounts


class StaticBankProvider(BankProviderClient):

    def __init__(
        self,
        transactions: Mapping[str, Sequence[Transaction]],
        accounts: Mapping[str, Sequence[BankAccount]] | None = None,
    ):
        self._transactions = {k: list(v) for k, v in transactions.items()}
        self._accounts = {k: list(v) for k, v in (accounts or {}).items()}

    def list_accounts(self, token: str) -> List[BankAccount]:
        self._check_token(token)
        if token in self._accounts:
            return list(self._accounts[token])
        ids = sorted({t.account_id for t in self._transactions[token]})
        return [BankAccount(id=i, name=i) for i in ids]

    def list_transactions(self, token: str, start_date: date, end_date: date) -> List[Transaction]:
        self._check_token(token)
        return [t for t in self._transactions[token] if start_date <= t.date <= end_date]

    def latest_date(self) -> date | None:
        """Most recent transaction date across all tokens, None when empty."""
        dates = [t.date for txns in self._transactions.values() for t in txns]
        return max(dates) if dates else None

    def _check_token(self, token: str) -> None:
        if token not in self._transactions:
            raise ConnectionError("Unknown bank access token")

    @classmethod
    def from_csv(cls, path: str) -> tuple["StaticBankProvider", List[str]]:
        """Loads a provider and its tokens from a transactions CSV."""
        df = pd.read_csv(path)
        if "token" not in df.columns:
            df["token"] = DEFAULT_TOKEN
        df["token"] = df["token"].fillna(DEFAULT_TOKEN).astype(str)
        df["transaction_date"] = pd.to_datetime(df["transaction_date"])

        transactions: Dict[str, List[Transaction]] = {}
        accounts: Dict[str, Dict[str, BankAccount]] = {}
        for row in df.to_dict("records"):
            token = row["token"]
            account_id = str(row["account_id"])
            transactions.setdefault(token, []).append(
                Transaction(
                    id=str(row["transaction_id"]),
                    account_id=account_id,
                    date=row["transaction_date"].date(),
                    amount=abs(float(row["amount"])),
                    description=str(row["description"]),
                    merchant_hint=_optional_str(row.get("merchant_hint")),
                    category=_optional_str(row.get("category")),
                )
            )
            name = _optional_str(row.get("account_name")) or account_id
            accounts.setdefault(token, {})[account_id] = BankAccount(id=account_id, name=name)

        logger.info(f"Loaded {len(df):,} transactions for {len(transactions)} tokens from {path}")
        return (
            cls(transactions, {t: list(a.values()) for t, a in accounts.items()}),
            sorted(transactions),
        )


def _optional_str(value) -> str | None:
    if value is None or pd.isna(value):
        return None
    text = str(value).strip()
    return text or None
