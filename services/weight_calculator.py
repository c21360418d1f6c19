import logging
import sqlite3

import db
from services.errors import translate_storage_errors
from services.settings import DEFAULT_UNIT_WEIGHT_KG

logger = logging.getLogger(__name__)

WEIGHT_SOURCE_FULL = "tare_plus_capacity"
WEIGHT_SOURCE_EMPTY = "tare"
WEIGHT_SOURCE_CONTAINER = "tare_container"
WEIGHT_SOURCE_TARE_ONLY = "tare_only"
WEIGHT_SOURCE_CAPACITY_ONLY = "capacity_only"
WEIGHT_SOURCE_DEFAULT = "default"

FALLBACK_SOURCES = {
    WEIGHT_SOURCE_TARE_ONLY,
    WEIGHT_SOURCE_CAPACITY_ONLY,
    WEIGHT_SOURCE_DEFAULT,
}


def _weight_value(value):
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def resolve_unit_weight(product):
    """Return ``(unit_weight_kg, weight_source)`` for a product/variant row."""
    capacity_kg = _weight_value(product.get("capacity_kg"))
    tare_weight_kg = _weight_value(product.get("tare_weight_kg"))
    variant = (product.get("variant_name") or "").strip().lower()

    if capacity_kg is not None and tare_weight_kg is not None:
        if variant == "full":
            return tare_weight_kg + capacity_kg, WEIGHT_SOURCE_FULL
        if variant == "empty":
            return tare_weight_kg, WEIGHT_SOURCE_EMPTY
        return tare_weight_kg, WEIGHT_SOURCE_CONTAINER
    if tare_weight_kg is not None:
        return tare_weight_kg, WEIGHT_SOURCE_TARE_ONLY
    if capacity_kg is not None:
        return capacity_kg, WEIGHT_SOURCE_CAPACITY_ONLY
    return DEFAULT_UNIT_WEIGHT_KG, WEIGHT_SOURCE_DEFAULT


def _fallback_event(order_id, line, reason, unit_weight_kg):
    logger.warning(
        "Weight fallback for order=%s line=%s product=%s reason=%s unit_weight_kg=%s",
        order_id,
        line.get("order_line_id"),
        line.get("product_id"),
        reason,
        unit_weight_kg,
    )
    return {
        "order_id": order_id,
        "order_line_id": line.get("order_line_id"),
        "product_id": line.get("product_id"),
        "reason": reason,
        "unit_weight_kg": unit_weight_kg,
    }


def _record_fallbacks(order_id, events, connection=None):
    if not events:
        return
    try:
        with db.use_connection(connection) as active:
            for event in events:
                db.record_weight_event(active, event)
    except sqlite3.Error:
        logger.exception("Failed to record weight fallback events for order=%s", order_id)


def _estimate_lines(order_id, connection):
    lines = db.list_order_lines_with_products(order_id, connection=connection)
    estimates = []
    fallbacks = []
    for line in lines:
        quantity = max(int(line.get("quantity") or 0), 0)
        if line.get("resolved_product_id") is None:
            fallbacks.append(_fallback_event(order_id, line, "product_not_found", None))
            continue

        unit_weight_kg, weight_source = resolve_unit_weight(line)
        if weight_source in FALLBACK_SOURCES:
            fallbacks.append(_fallback_event(order_id, line, weight_source, unit_weight_kg))

        estimates.append(
            {
                "order_line_id": line.get("order_line_id"),
                "product_id": line.get("product_id"),
                "product_name": line.get("product_name"),
                "sku": line.get("sku"),
                "variant_name": line.get("variant_name"),
                "quantity": quantity,
                "unit_weight_kg": unit_weight_kg,
                "estimated_weight_kg": quantity * unit_weight_kg,
                "weight_source": weight_source,
            }
        )
    return estimates, fallbacks


@translate_storage_errors
def estimate_order_lines(order_id, connection=None):
    """Per-line weight breakdown for an order.

    The lines are read first; fallback events are written afterwards, on the
    caller's connection when one is given and on a short connection of their
    own otherwise. A failure to record them is logged and never fails the read.
    """
    with db.use_connection(connection) as active:
        estimates, fallbacks = _estimate_lines(order_id, active)
    _record_fallbacks(order_id, fallbacks, connection=connection)
    return estimates


@translate_storage_errors
def calculate_order_weight(order_id, connection=None):
    estimates = estimate_order_lines(order_id, connection=connection)
    total_weight_kg = sum(line["estimated_weight_kg"] for line in estimates)
    logger.info("Calculated order weight: %skg for order %s", total_weight_kg, order_id)
    return total_weight_kg


@translate_storage_errors
def list_weight_fallback_events(limit=None):
    return db.list_weight_events(limit=limit)
