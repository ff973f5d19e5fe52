"""
main.py
--------
Entry point for the Bill Discovery Engine.

Reads exported emails and/or bank transactions, runs the discovery pipeline,
and writes the reconciled bills to the outputs/ folder.

Usage (from the project root):
    python main.py --emails emails.json --transactions transactions.csv

    # With optional arguments:
    python main.py --transactions transactions.csv --lookback 180
    python main.py --emails emails.json --min-confidence 80
    python main.py --emails emails.json --timeout 30
"""

import sys
import os
import argparse
import logging
from datetime import datetime

import pandas as pd

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.errors import DiscoveryFailedError
from core.models import ProgressEvent
from pipeline import BillDiscoveryPipeline, bills_to_frame
from sources.static_clients import StaticBankProvider, StaticEmailProvider


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bill Discovery Engine: find recurring bills in email and bank history."
    )
    parser.add_argument(
        "--emails", type=str, default=None,
        help="Path to an emails JSON export (accounts + messages per account)."
    )
    parser.add_argument(
        "--transactions", type=str, default=None,
        help="Path to a transactions CSV export."
    )
    parser.add_argument(
        "--lookback", type=int, default=None,
        help="Lookback window in days. Defaults to config value (365)."
    )
    parser.add_argument(
        "--min-confidence", type=float, default=0.0,
        help="Minimum bill confidence (0-100) to include in output. Default: 0 (keep all)."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="Seconds to wait for sources before returning partial results."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def _log_progress(event: ProgressEvent) -> None:
    logger.info(f"[{event.progress:>3}%] {event.step}: {event.message}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if not args.emails and not args.transactions:
        logger.error("Nothing to scan: pass --emails and/or --transactions.")
        return 2

    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    # --- Load sources ---
    email_client, email_accounts = None, []
    bank_client, bank_tokens = None, []
    for path in (args.emails, args.transactions):
        if path and not os.path.exists(path):
            logger.error(f"Input file not found: {path}")
            return 1
    if args.emails:
        email_client, email_accounts = StaticEmailProvider.from_json(args.emails)
    if args.transactions:
        bank_client, bank_tokens = StaticBankProvider.from_csv(args.transactions)

    # --- Run pipeline ---
    # File exports are historic: anchor the bank window on their latest transaction.
    as_of = bank_client.latest_date() if bank_client is not None else None
    pipeline = BillDiscoveryPipeline(
        email_client=email_client,
        bank_client=bank_client,
        lookback_days=args.lookback,
        as_of=as_of,
    )
    try:
        result = pipeline.run(email_accounts, bank_tokens, progress=_log_progress, timeout=args.timeout)
    except DiscoveryFailedError as e:
        logger.error(f"Discovery failed: {e}")
        for error in e.errors:
            logger.error(f"  {error}")
        return 1

    for error in result.errors:
        logger.warning(error)

    # --- Apply confidence filter ---
    bills = bills_to_frame(result.bills)
    filtered = bills[bills["confidence"] >= args.min_confidence].copy()
    logger.info(
        f"After filtering (>= {args.min_confidence:g}): {len(filtered):,} bills. "
        f"Filtered out: {len(bills) - len(filtered):,}."
    )

    # --- Output ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    bills_path = os.path.join(output_dir, f"bills_{timestamp}.csv")
    filtered.to_csv(bills_path, index=False)
    logger.info(f"Bills saved to: {bills_path}")

    _print_summary(filtered, result.stats.to_dict(), result.cancelled)
    return 0


def _print_summary(df: pd.DataFrame, stats: dict, cancelled: bool):
    """Prints a clean summary table to the console."""
    print("\n" + "=" * 80)
    print("  BILL DISCOVERY SUMMARY" + ("  (PARTIAL: run cancelled)" if cancelled else ""))
    print("=" * 80)

    if df.empty:
        print("\n  No bills to display.\n")
    else:
        print("\n  Bills:")
        print("  " + "-" * 76)
        for _, row in df.iterrows():
            due = row["due_date"] or "unknown"
            print(
                f"    {row['name'][:28]:28s}  ${row['amount']:>9,.2f}  due {due:10s}  "
                f"{row['category']:13s}  {row['confidence']:5.1f}"
            )

    print("\n  Statistics:")
    print("  " + "-" * 76)
    for key, value in stats.items():
        print(f"    {key:22s}  {value}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    sys.exit(main())
