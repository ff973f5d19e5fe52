"""
test_pipeline.py
-----------------
Integration tests for the discovery pipeline and the CLI.

Run from the project root:
    python -m pytest tests/test_pipeline.py -v

Tests are organized by layer:
    - Static provider clients
    - Full Pipeline (integration)
    - Cancellation & timeout
    - CLI
"""

import sys
import os
import json
import threading
import pytest
import pandas as pd
from datetime import date, datetime, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.errors import DiscoveryFailedError
from core.models import BillCategory, BillFrequency, EmailAccount, EmailMessage, SourceType, Transaction
from core.progress import ProgressChannel
from pipeline import BILL_COLUMNS, BillDiscoveryPipeline, bills_to_frame
from sources.clients import EmailProviderClient
from sources.static_clients import StaticBankProvider, StaticEmailProvider


# =============================================================================
# FIXTURES
# =============================================================================

FAST_CONFIG = {"max_workers": 4, "poll_interval_seconds": 0.01, "savings_per_duplicate": 15.0}

HOME = EmailAccount("acct-home", provider="gmail", address="me@example.com")
WORK = EmailAccount("acct-work", provider="outlook", address="me@work.example.com")


@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _netflix_email(message_id: str = "m1") -> EmailMessage:
    return EmailMessage(
        id=message_id,
        sender="Netflix <billing@netflix.com>",
        subject="Your Netflix bill is ready",
        body="Your monthly charge of $15.99 is due on March 1, 2024.",
        date=datetime(2024, 2, 20, 9, 30),
    )


def _pge_email(message_id: str = "m2") -> EmailMessage:
    return EmailMessage(
        id=message_id,
        sender="PG&E <statements@pge.com>",
        subject="Your PG&E statement is available",
        body="Amount due: $120.00. Please pay by April 15, 2024.",
        date=datetime(2024, 3, 20, 8, 0),
    )


def _netflix_transactions(n: int = 4, account_id: str = "acc-checking") -> list[Transaction]:
    """Helper: monthly Netflix charges ending today, inside any lookback window."""
    today = date.today()
    return [
        Transaction(
            id=f"t{n - i}",
            account_id=account_id,
            date=today - timedelta(days=30 * i),
            amount=15.99,
            description="NETFLIX.COM",
        )
        for i in range(n)
    ]


def _make_pipeline(messages=None, transactions=None, **kwargs) -> BillDiscoveryPipeline:
    email_client = StaticEmailProvider(messages) if messages is not None else None
    bank_client = StaticBankProvider(transactions) if transactions is not None else None
    return BillDiscoveryPipeline(email_client=email_client, bank_client=bank_client, config=FAST_CONFIG, **kwargs)


def _pge_transactions_2024() -> list[Transaction]:
    """Helper: three monthly PG&E charges from early 2024."""
    return [
        Transaction(id=f"p{i + 1}", account_id="acc-checking", date=d, amount=a, description="PG&E AUTOPAY")
        for i, (d, a) in enumerate(zip(
            (date(2024, 1, 15), date(2024, 2, 14), date(2024, 3, 16)), (120.0, 125.0, 118.0)
        ))
    ]


class _BlockingEmailProvider(EmailProviderClient):
    """Email client that hangs until released, to exercise timeouts."""

    def __init__(self):
        self.release = threading.Event()

    def fetch_bill_emails(self, account):
        self.release.wait(timeout=5)
        return [_netflix_email()]


# =============================================================================
# STATIC PROVIDERS
# =============================================================================

class TestStaticProviders:
    def test_email_from_json(self, tmp_path):
        path = tmp_path / "emails.json"
        path.write_text(json.dumps({
            "accounts": [{"account_id": "acct-home", "address": "me@example.com"}],
            "messages": {"acct-home": [{
                "id": "m1", "from": "Netflix <billing@netflix.com>",
                "subject": "Your Netflix bill is ready", "body": "$15.99", "date": "2024-02-20",
            }]},
        }))
        provider, accounts = StaticEmailProvider.from_json(str(path))
        assert [a.account_id for a in accounts] == ["acct-home"]

        messages = provider.fetch_bill_emails(accounts[0])
        assert messages[0].sender == "Netflix <billing@netflix.com>"
        assert messages[0].date == datetime(2024, 2, 20)

    def test_unknown_email_account_raises(self):
        with pytest.raises(ConnectionError):
            StaticEmailProvider({}).fetch_bill_emails(HOME)

    def test_bank_from_csv(self, tmp_path):
        path = tmp_path / "transactions.csv"
        pd.DataFrame([
            {"transaction_id": "t1", "account_id": "acc-1", "transaction_date": "2024-01-15",
             "amount": -120.0, "description": "PG&E AUTOPAY", "account_name": "Checking"},
            {"transaction_id": "t2", "account_id": "acc-1", "transaction_date": "2024-02-14",
             "amount": -125.0, "description": "PG&E AUTOPAY", "account_name": "Checking"},
        ]).to_csv(path, index=False)

        provider, tokens = StaticBankProvider.from_csv(str(path))
        assert tokens == ["default"]
        assert provider.list_accounts("default")[0].name == "Checking"

        txns = provider.list_transactions("default", date(2024, 2, 1), date(2024, 12, 31))
        assert [t.id for t in txns] == ["t2"]
        assert txns[0].amount == 125.0
        assert txns[0].merchant_hint is None

    def test_unknown_bank_token_raises(self):
        with pytest.raises(ConnectionError):
            StaticBankProvider({}).list_accounts("tok-missing")


# =============================================================================
# FULL PIPELINE
# =============================================================================

class TestPipeline:
    def test_email_and_bank_reconciled(self):
        pipeline = _make_pipeline(
            messages={HOME.account_id: [_netflix_email()]},
            transactions={"tok-1234": _netflix_transactions()},
        )
        result = pipeline.run([HOME], ["tok-1234"])

        assert not result.cancelled
        assert result.errors == []
        assert len(result.bills) == 1

        bill = result.bills[0]
        assert bill.canonical_key == "netflix:16"
        assert bill.confidence > 95
        assert bill.sources == {SourceType.EMAIL, SourceType.BANK}
        assert bill.email_ids == ["m1"]
        assert "t4" in bill.transaction_ids
        assert bill.category == BillCategory.ENTERTAINMENT
        assert bill.frequency == BillFrequency.MONTHLY
        assert bill.merchant_logo_ref == "/logos/netflix.png"

    def test_statistics(self):
        pipeline = _make_pipeline(
            messages={HOME.account_id: [_netflix_email(), _pge_email()]},
            transactions={"tok-1234": _netflix_transactions()},
        )
        stats = pipeline.run([HOME], ["tok-1234"]).stats

        assert stats.total_bills_found == 2
        assert stats.email_bills_found == 2
        assert stats.bank_bills_found == 1
        assert stats.subscriptions_found == 1
        assert stats.duplicates_found == 1
        assert stats.potential_savings == pytest.approx(15.0)

    def test_one_failing_account_does_not_abort_run(self):
        # WORK is configured by the caller but unknown to the provider.
        pipeline = _make_pipeline(messages={HOME.account_id: [_netflix_email()]})
        result = pipeline.run([HOME, WORK])

        assert len(result.bills) == 1
        assert len(result.errors) == 1
        assert "Source unavailable" in result.errors[0]
        assert WORK.address in result.errors[0]

    def test_all_sources_failing_raises(self):
        pipeline = _make_pipeline(messages={}, transactions={})
        with pytest.raises(DiscoveryFailedError) as exc_info:
            pipeline.run([HOME], ["tok-1234"])
        assert len(exc_info.value.errors) == 2

    def test_missing_client_counts_as_unavailable(self):
        pipeline = _make_pipeline(messages={HOME.account_id: [_netflix_email()]})
        result = pipeline.run([HOME], ["tok-1234"])
        assert len(result.bills) == 1
        assert len(result.errors) == 1

    def test_no_sources_returns_empty_result(self):
        events = []
        result = _make_pipeline().run(progress=events.append)

        assert result.bills == []
        assert result.errors == []
        assert result.stats.total_bills_found == 0
        assert [e.progress for e in events] == [5, 90, 100]
        assert events[-1].is_complete

    def test_progress_is_monotonic_and_completes(self):
        events = []
        pipeline = _make_pipeline(
            messages={HOME.account_id: [_netflix_email()], WORK.account_id: [_pge_email()]},
            transactions={"tok-1234": _netflix_transactions()},
        )
        pipeline.run([HOME, WORK], ["tok-1234"], progress=events.append)

        values = [e.progress for e in events]
        assert values == sorted(values)
        assert values[0] == 5 and values[-1] == 100
        assert events[-1].step == "complete"
        assert sum(1 for e in events if e.is_complete) == 1
        assert {e.step for e in events} >= {"scan", "email", "bank", "processing", "complete"}

    def test_result_is_deterministic(self):
        def run():
            pipeline = _make_pipeline(
                messages={HOME.account_id: [_netflix_email(), _pge_email()], WORK.account_id: [_netflix_email("m9")]},
                transactions={"tok-1234": _netflix_transactions()},
            )
            return json.dumps(pipeline.run([HOME, WORK], ["tok-1234"]).to_dict(), sort_keys=True)

        assert run() == run()

    def test_start_with_stream(self):
        pipeline = _make_pipeline(messages={HOME.account_id: [_netflix_email()]})
        channel = ProgressChannel()
        future = pipeline.start([HOME], progress=channel)

        steps = [e.step for e in channel.stream(timeout=5)]
        result = future.result(timeout=5)

        assert steps[0] == "scan"
        assert steps[-1] == "complete"
        assert len(result.bills) == 1

    def test_scan_single_email_account(self):
        pipeline = _make_pipeline(messages={HOME.account_id: [_netflix_email(), _pge_email()]})
        candidates = pipeline.scan_email_account(HOME)
        assert sorted(c.id for c in candidates) == ["email_acct-home_m1", "email_acct-home_m2"]

        with pytest.raises(DiscoveryFailedError, match="Source unavailable"):
            pipeline.scan_email_account(WORK)

    def test_analyze_single_bank_token(self):
        pipeline = _make_pipeline(transactions={"tok-1234": _netflix_transactions()})
        candidates = pipeline.analyze_bank_account("tok-1234")
        assert len(candidates) == 1
        assert candidates[0].source_type == SourceType.BANK
        assert candidates[0].frequency == BillFrequency.MONTHLY

        with pytest.raises(DiscoveryFailedError):
            pipeline.analyze_bank_account("tok-0000")

    def test_bank_token_masked_in_errors(self):
        pipeline = _make_pipeline(messages={HOME.account_id: []}, transactions={})
        result = pipeline.run([HOME], ["secret-token-9876"])
        assert len(result.errors) == 1
        assert "secret-token" not in result.errors[0]
        assert "9876" in result.errors[0]

    def test_historic_bank_data_with_as_of(self):
        txns = {"tok-1234": _pge_transactions_2024()}

        assert _make_pipeline(transactions=txns).run(bank_tokens=["tok-1234"]).bills == []

        result = _make_pipeline(transactions=txns, as_of=date(2024, 3, 31)).run(bank_tokens=["tok-1234"])
        assert len(result.bills) == 1
        assert result.bills[0].category == BillCategory.UTILITIES
        assert result.bills[0].due_date == date(2024, 4, 15)

    def test_explicit_zero_lookback_kept(self):
        assert _make_pipeline(lookback_days=0).lookback_days == 0
        assert _make_pipeline().lookback_days == 365

    def test_same_message_id_in_two_mailboxes(self):
        pipeline = _make_pipeline(
            messages={HOME.account_id: [_netflix_email("1")], WORK.account_id: [_netflix_email("1")]},
        )
        result = pipeline.run([HOME, WORK])

        assert len(result.bills) == 1
        ids = [c.id for c in result.bills[0].candidates]
        assert ids == ["email_acct-home_1", "email_acct-work_1"]


# =============================================================================
# CANCELLATION & TIMEOUT
# =============================================================================

class TestCancellation:
    def test_pre_cancelled_run_returns_partial_result(self):
        cancel = threading.Event()
        cancel.set()
        events = []
        pipeline = _make_pipeline(messages={HOME.account_id: [_netflix_email()]})
        result = pipeline.run([HOME], progress=events.append, cancel_event=cancel)

        assert result.cancelled
        assert result.bills == []
        assert any("cancelled" in e for e in result.errors)
        assert events[-1].step == "cancelled"
        assert events[-1].progress == 100
        assert events[-1].is_complete

    def test_timeout_keeps_finished_sources(self):
        slow = _BlockingEmailProvider()
        pipeline = BillDiscoveryPipeline(
            email_client=slow,
            bank_client=StaticBankProvider({"tok-1234": _netflix_transactions()}),
            config=FAST_CONFIG,
        )
        try:
            result = pipeline.run([HOME], ["tok-1234"], timeout=0.5)
        finally:
            slow.release.set()

        assert result.cancelled
        assert len(result.bills) == 1
        assert result.bills[0].sources == {SourceType.BANK}
        assert result.stats.bank_bills_found == 1
        assert result.stats.email_bills_found == 0


# =============================================================================
# OUTPUT
# =============================================================================

class TestOutput:
    def test_bills_to_frame(self):
        pipeline = _make_pipeline(messages={HOME.account_id: [_netflix_email(), _pge_email()]})
        df = bills_to_frame(pipeline.run([HOME]).bills)

        assert list(df.columns) == BILL_COLUMNS
        assert len(df) == 2
        assert df["confidence"].is_monotonic_decreasing
        assert set(df["sources"]) == {"email"}

    def test_bills_to_frame_empty(self):
        df = bills_to_frame([])
        assert df.empty
        assert list(df.columns) == BILL_COLUMNS

    def test_cli_end_to_end(self, tmp_path):
        import main

        emails = tmp_path / "emails.json"
        emails.write_text(json.dumps({
            "accounts": [{"account_id": "acct-home"}],
            "messages": {"acct-home": [{
                "id": "m1", "from": "Netflix <billing@netflix.com>",
                "subject": "Your Netflix bill is ready",
                "body": "Your monthly charge of $15.99 is due on March 1, 2024.",
            }]},
        }))
        out_dir = tmp_path / "out"

        assert main.main(["--emails", str(emails), "--output-dir", str(out_dir)]) == 0

        outputs = list(out_dir.glob("bills_*.csv"))
        assert len(outputs) == 1
        df = pd.read_csv(outputs[0])
        assert df["name"].tolist() == ["Netflix"]

    def test_cli_historic_transactions_export(self, tmp_path):
        import main

        transactions = tmp_path / "transactions.csv"
        pd.DataFrame([
            {"transaction_id": t.id, "account_id": t.account_id, "transaction_date": t.date.isoformat(),
             "amount": t.amount, "description": t.description}
            for t in _pge_transactions_2024()
        ]).to_csv(transactions, index=False)
        out_dir = tmp_path / "out"

        assert main.main(["--transactions", str(transactions), "--output-dir", str(out_dir)]) == 0

        df = pd.read_csv(next(out_dir.glob("bills_*.csv")))
        assert len(df) == 1
        assert df["category"].tolist() == ["utilities"]
        assert df["due_date"].tolist() == ["2024-04-15"]

    def test_cli_requires_an_input(self):
        import main
        assert main.main([]) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
