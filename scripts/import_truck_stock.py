import argparse
import logging
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from services import stock_loader


def main():
    parser = argparse.ArgumentParser(
        description="Load full and empty cylinder counts onto trucks from a CSV/XLSX load sheet."
    )
    parser.add_argument("path", help="Load sheet (.csv or .xlsx).")
    parser.add_argument(
        "--user",
        type=str,
        default="",
        help="User id recorded on the stock movements.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse and validate only; do not change truck inventory.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    db.init_db()
    sheet_path = Path(args.path)
    with sheet_path.open("rb") as handle:
        parsed = stock_loader.parse_load_sheet(handle, sheet_path.name)

    print(f"Rows read: {parsed['total_rows']}")
    print(f"Rows ready: {len(parsed['rows'])}")
    for error in parsed["errors"]:
        print(f"  row {error['row']}: {error['fleet_number']} / {error['sku']}: {error['reason']}")

    if args.dry_run:
        print("\nDry run: no changes written.")
        return

    summary = stock_loader.apply_load_sheet(parsed, user_id=args.user or None)
    print(f"\nLoaded rows: {summary['loaded_rows']}")
    print(f"Full cylinders added: {summary['total_full']}")
    print(f"Empty cylinders added: {summary['total_empty']}")


if __name__ == "__main__":
    main()
