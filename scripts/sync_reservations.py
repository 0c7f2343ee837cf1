"""
Run one reservation sync for a team from the command line.

Usage:
    python scripts/sync_reservations.py --team TEAM_ID [--dry-run] [--create-tables]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cleanteam.db import Base, SessionLocal, engine
from cleanteam.logging import setup_logging
from cleanteam.services.sync import sync_reservations


def main():
    parser = argparse.ArgumentParser(description="Sync reservations into cleaning tasks")
    parser.add_argument("--team", required=True, help="Team id")
    parser.add_argument("--dry-run", action="store_true", help="Compute the plan without writing")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")

    args = parser.parse_args()
    setup_logging()

    if args.create_tables:
        Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        result = sync_reservations(db, args.team, dry_run=args.dry_run)
    finally:
        db.close()

    print("=" * 60)
    print(f"{'[DRY RUN] ' if args.dry_run else ''}{result.message}")
    for key, value in sorted(result.stats.items()):
        print(f"  {key}: {value}")
    print("=" * 60)
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
