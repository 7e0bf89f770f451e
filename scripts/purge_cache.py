"""
purge_cache.py: Remove expired and stale match previews from match_cache.

Targets
-------
  match_cache     Rows whose TTL has passed or that are older than 48 h.
                  Always included.
  data_fetches    Provider health-tracking logs (optional via --all flag).

The process-local InMemoryCacheStore and InjuryService caches live in the
server process and cannot be cleared here.

Usage
-----
  python scripts/purge_cache.py              # dry-run (shows counts, no delete)
  python scripts/purge_cache.py --execute    # actually delete rows
  python scripts/purge_cache.py --execute --all   # also wipe data_fetches log
"""

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

# Make `from backend.xxx import ...` resolve when run as python scripts/purge_cache.py
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Purge stale match previews for the Match Edge Engine."
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Actually delete rows.  Without this flag the script runs dry.",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Also wipe the data_fetches provider-health log table.",
    )
    args = parser.parse_args()

    dry_run = not args.execute

    from backend.models import SessionLocal, DataFetch
    from backend.services.cache import purge_stale_entries, stale_entries

    db = SessionLocal()
    try:
        label = "[DRY RUN] " if dry_run else ""

        stale_count = stale_entries(db).count()
        print(f"{label}match_cache: {stale_count} stale row(s)" + (" (would delete)" if dry_run else ""))
        if not dry_run:
            purge_stale_entries(db)

        fetch_count: int = db.query(DataFetch).count()
        if args.all:
            print(f"{label}data_fetches: {fetch_count} row(s)" + (" (would delete)" if dry_run else ""))
            if not dry_run and fetch_count:
                db.query(DataFetch).delete(synchronize_session=False)
        else:
            print(f"  data_fetches: {fetch_count} row(s), skipped (pass --all to include)")

        if dry_run:
            db.rollback()
            print("\nDry run complete: no rows were deleted. Re-run with --execute to apply.")
        else:
            db.commit()
            print(f"\nCache purge complete at {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC.")

    except Exception as exc:
        db.rollback()
        root = exc.__cause__ or exc
        print(f"ERROR: {type(root).__name__}: {root}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
