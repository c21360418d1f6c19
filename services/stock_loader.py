import io
import logging
import math
import os

import pandas as pd

import db
from services import inventory_ledger
from services.errors import InvalidRequestError, translate_storage_errors

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["fleet_number", "sku"]

OPTIONAL_COLUMNS = ["qty_full", "qty_empty"]

COLUMN_ALIASES = {
    "truck": "fleet_number",
    "fleet": "fleet_number",
    "fleet #": "fleet_number",
    "fleet no": "fleet_number",
    "product": "sku",
    "product_sku": "sku",
    "product_id": "sku",
    "item": "sku",
    "full": "qty_full",
    "fulls": "qty_full",
    "full qty": "qty_full",
    "empty": "qty_empty",
    "empties": "qty_empty",
    "empty qty": "qty_empty",
}


def _read_sheet_dataframe(file_stream, filename):
    suffix = os.path.splitext(filename or "")[1].lower()

    stream = file_stream
    if hasattr(file_stream, "stream"):
        stream = file_stream.stream
    if hasattr(stream, "seek"):
        stream.seek(0)
    raw_bytes = stream.read()
    if not raw_bytes:
        raise InvalidRequestError("Upload is empty.")

    if suffix in {".xlsx", ".xlsm"}:
        return pd.read_excel(io.BytesIO(raw_bytes), dtype=str, keep_default_na=False)
    if suffix == ".csv":
        return pd.read_csv(io.BytesIO(raw_bytes), dtype=str, keep_default_na=False)
    raise InvalidRequestError(
        "Unsupported file type. Upload .csv or .xlsx.",
        details={"filename": filename},
    )


def _normalize_columns(columns):
    mapping = {}
    for col in columns:
        normalized = str(col).strip().lower()
        normalized = COLUMN_ALIASES.get(normalized, normalized)
        mapping[col] = normalized
    return mapping


def _clean_value(value):
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def _to_quantity(value):
    text = _clean_value(value)
    if not text:
        return 0
    try:
        parsed = float(text)
    except ValueError:
        return None
    if parsed < 0 or not parsed.is_integer():
        return None
    return int(parsed)


def _resolve_product(value):
    product = db.get_product_by_sku(value)
    if product:
        return product
    # Sheets exported from the ledger carry numeric product ids in the sku column.
    if value.isdigit():
        return db.get_product(int(value))
    return None


def parse_load_sheet(file_stream, filename):
    """Parse a truck load sheet (CSV or XLSX) into stock rows ready to load.

    Rows that cannot be resolved are reported in ``errors`` with their sheet
    row number instead of failing the whole upload.
    """
    df = _read_sheet_dataframe(file_stream, filename)
    column_map = _normalize_columns(df.columns)

    available = set(column_map.values())
    missing = [col for col in REQUIRED_COLUMNS if col not in available]
    if missing:
        raise InvalidRequestError(
            f"Missing required columns: {missing}",
            details={"missing_columns": missing},
        )
    if not any(col in available for col in OPTIONAL_COLUMNS):
        raise InvalidRequestError(
            "Load sheet needs a qty_full or qty_empty column.",
            details={"missing_columns": OPTIONAL_COLUMNS},
        )

    df = df.rename(columns=column_map)
    allowed_columns = set(REQUIRED_COLUMNS + OPTIONAL_COLUMNS)
    df = df[[col for col in df.columns if col in allowed_columns]]

    rows = []
    errors = []
    trucks_by_fleet = {}
    # Header is sheet row 1.
    for row_number, record in enumerate(df.to_dict(orient="records"), start=2):
        fleet_number = _clean_value(record.get("fleet_number")).upper()
        sku = _clean_value(record.get("sku")).upper()
        if not fleet_number and not sku:
            continue

        if fleet_number not in trucks_by_fleet:
            trucks_by_fleet[fleet_number] = db.get_truck_by_fleet_number(fleet_number)
        truck = trucks_by_fleet[fleet_number]
        if not truck:
            errors.append({"row": row_number, "fleet_number": fleet_number, "sku": sku, "reason": "Unknown truck"})
            continue

        product = _resolve_product(sku)
        if not product:
            errors.append({"row": row_number, "fleet_number": fleet_number, "sku": sku, "reason": "Unknown product"})
            continue

        qty_full = _to_quantity(record.get("qty_full"))
        qty_empty = _to_quantity(record.get("qty_empty"))
        if qty_full is None or qty_empty is None:
            errors.append(
                {
                    "row": row_number,
                    "fleet_number": fleet_number,
                    "sku": sku,
                    "reason": "Quantities must be whole numbers of zero or more",
                }
            )
            continue
        if not qty_full and not qty_empty:
            errors.append({"row": row_number, "fleet_number": fleet_number, "sku": sku, "reason": "Nothing to load"})
            continue

        rows.append(
            {
                "row": row_number,
                "truck_id": truck["id"],
                "fleet_number": truck["fleet_number"],
                "product_id": product["id"],
                "sku": product["sku"],
                "qty_full": qty_full,
                "qty_empty": qty_empty,
            }
        )

    return {
        "rows": rows,
        "errors": errors,
        "total_rows": len(df),
    }


@translate_storage_errors
def apply_load_sheet(parsed, user_id=None):
    rows = (parsed or {}).get("rows") or []
    with db.write_transaction() as connection:
        for row in rows:
            try:
                inventory_ledger.load_stock(
                    row["truck_id"],
                    row["product_id"],
                    qty_full=row["qty_full"],
                    qty_empty=row["qty_empty"],
                    user_id=user_id,
                    connection=connection,
                )
            except InvalidRequestError as exc:
                raise InvalidRequestError(
                    f"Row {row['row']}: {exc.message}",
                    details=dict(exc.details, row=row["row"], fleet_number=row["fleet_number"]),
                ) from exc
    logger.info(
        "Applied load sheet: %s rows loaded, %s rows rejected",
        len(rows),
        len((parsed or {}).get("errors") or []),
    )
    return {
        "loaded_rows": len(rows),
        "rejected_rows": len((parsed or {}).get("errors") or []),
        "total_full": sum(row["qty_full"] for row in rows),
        "total_empty": sum(row["qty_empty"] for row in rows),
    }
