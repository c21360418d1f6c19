import argparse
import logging
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from services import reconciliation


def _print_drift(drift, max_rows):
    if not drift:
        print("No assignment drift found.")
        return
    print(f"{'ORDER':>8}  {'CURRENT TRUCK':>13}  {'CURRENT DATE':<12}  {'EXPECTED TRUCK':>14}  {'EXPECTED DATE':<12}")
    for entry in drift[:max_rows]:
        print(
            f"{entry['order_id']:>8}  "
            f"{str(entry['current_truck_id'] or '-'):>13}  "
            f"{entry['current_assigned_date'] or '-':<12}  "
            f"{str(entry['expected_truck_id'] or '-'):>14}  "
            f"{entry['expected_assigned_date'] or '-':<12}"
        )
    if len(drift) > max_rows:
        print(f"... {len(drift) - max_rows} more")


def main():
    parser = argparse.ArgumentParser(
        description=(
            "Repair order truck-assignment fields that drifted from their "
            "truck allocations and resolve open sync issues."
        )
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report drift; do not write any changes.",
    )
    parser.add_argument(
        "--max-preview",
        type=int,
        default=30,
        help="Maximum drift rows to print (default: 30).",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    db.init_db()
    open_issues = db.list_sync_issues()
    result = reconciliation.reconcile_order_assignments(dry_run=args.dry_run)

    print(f"Open sync issues before run: {len(open_issues)}")
    _print_drift(result["drift"], max_rows=max(int(args.max_preview or 0), 1))
    if result["dry_run"]:
        print("\nDry run: no changes written.")
    else:
        print(f"\nRepaired orders: {result['repaired']}")
        print(f"Resolved sync issues: {result['resolved_issues']}")


if __name__ == "__main__":
    main()
