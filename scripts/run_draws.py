"""
Run one draw pass: ask the store to pick a winner for every expired raffle and
announce new winners to the webhook.

Requirements:
- SUPABASE_URL / SUPABASE_SERVICE_KEY set in the environment (or .env).
- DISCORD_WEBHOOK_URL optional; without it announcements are skipped.
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
from lifecycle import LifecycleController  # type: ignore  # noqa: E402
from models import utcnow  # type: ignore  # noqa: E402
from notifications import WebhookSink  # type: ignore  # noqa: E402
from raffle_store import SupabaseStore  # type: ignore  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description="Draw winners for expired raffles.")
    parser.add_argument("--dry-run", action="store_true", help="List expired raffles without calling the draw procedure.")
    parser.add_argument("--no-webhook", action="store_true", help="Skip Discord announcements for this pass.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    settings = Settings()
    if not settings.supabase_url:
        raise SystemExit("SUPABASE_URL not configured")
    store = SupabaseStore(settings.supabase_url, settings.supabase_service_key)

    if args.dry_run:
        expired = store.list_expired_active(utcnow())
        print(f"{len(expired)} expired raffle(s) awaiting a draw")
        for raffle_id in expired:
            print(f"  {raffle_id}")
        return

    sink = None if args.no_webhook else WebhookSink(settings.discord_webhook_url, settings.site_url, background=False)
    controller = LifecycleController(store, sink)
    result = controller.refresh()
    if not result.ok:
        raise SystemExit(f"[error] {result.error}")
    for raffle_id, winner in result.value.drawn.items():
        print(f"[draw] {raffle_id} -> {winner or 'no entries'}")
    for raffle_id, error in result.value.draw_errors.items():
        print(f"[error] {raffle_id}: {error}")


if __name__ == "__main__":
    main()
