"""Reconcile underwriter payouts with the current share ledger.

Run after investments are confirmed for a property that already has
distributions. DRAFT distributions get corrected amounts; later ones only get
their shares_at_record annotation and notes corrected.

Usage:
    uv run python scripts/fix_underwriter_payouts.py                    # All distributions
    uv run python scripts/fix_underwriter_payouts.py --distribution ID  # One distribution
    uv run python scripts/fix_underwriter_payouts.py --dry-run          # Report only
"""

import argparse
import logging
import sys
import uuid
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from payout_engine.database import SessionLocal
from payout_engine.reconciliation import fix_underwriter_payouts

logger = logging.getLogger(__name__)


def print_report(result, dry_run: bool) -> None:
    verb = "Would fix" if dry_run else "Fixed"
    print(f"\n{verb} {result.fixed} underwriter payout(s)")
    for item in result.payouts:
        line = (
            f"  {item.id}  [{item.distribution_status.value}]  "
            f"shares {item.old_shares} -> {item.new_shares}"
        )
        if item.amount_changed:
            line += f"  amount {item.old_amount} -> {item.new_amount}"
        print(line)
    for note in result.skipped:
        print(f"  SKIPPED: {note}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Fix underwriter payouts")
    parser.add_argument("--distribution", type=uuid.UUID, help="Only this distribution id")
    parser.add_argument("--actor", default="system:fix_underwriter_payouts", help="Audit actor id")
    parser.add_argument("--dry-run", action="store_true", help="Roll back instead of committing")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    db = SessionLocal()
    try:
        if args.dry_run:
            # Outer transaction stays open so the reconciliation runs as a savepoint
            db.begin()
            try:
                result = fix_underwriter_payouts(db, args.distribution, args.actor)
                print_report(result, dry_run=True)
            finally:
                db.rollback()
        else:
            result = fix_underwriter_payouts(db, args.distribution, args.actor)
            print_report(result, dry_run=False)
    except Exception:
        logger.exception("Underwriter payout reconciliation failed")
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
