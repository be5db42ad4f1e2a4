"""
Retry purchase bookkeeping that failed after the on-chain transfer confirmed,
then report raffles whose ticket_sold counter disagrees with their entries.
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys

# Add backend module path
ROOT = pathlib.Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
sys.path.append(str(BACKEND))

from config import Settings  # type: ignore  # noqa: E402
from db import init_db, make_engine  # type: ignore  # noqa: E402
from raffle_store import SupabaseStore  # type: ignore  # noqa: E402
from settlement import SettlementRecorder  # type: ignore  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description="Reconcile failed purchase bookkeeping.")
    parser.add_argument("--check-only", action="store_true", help="Only report mismatches; do not retry failed writes.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    settings = Settings()
    if not settings.supabase_url:
        raise SystemExit("SUPABASE_URL not configured")
    engine = make_engine(settings.database_url)
    init_db(engine)
    recorder = SettlementRecorder(SupabaseStore(settings.supabase_url, settings.supabase_service_key), engine)

    if not args.check_only:
        outcome = recorder.reconcile()
        print(f"Reconciled {outcome['fixed']} settlement(s); {outcome['still_failing']} still failing")
    for row in recorder.detect_mismatches():
        print(f"[mismatch] {row['raffle_id']} ticket_sold={row['ticket_sold']} entries={row['entry_total']}")


if __name__ == "__main__":
    main()
