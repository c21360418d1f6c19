"""Truck stock ledger: reservations and load/unload against ``truck_inventory``.

Every counter change is a single conditional UPDATE, so the check and the
write happen atomically in the database. Concurrent reservations for the same
(truck, product) can never together exceed ``qty_full``.
"""

import logging
from datetime import datetime, timezone

import db
from services.capacity_tracker import truck_total_capacity
from services.errors import (
    InsufficientStockError,
    InvalidRequestError,
    NotFoundError,
    translate_storage_errors,
)
from services.settings import EMPTY_CYLINDER_KG
from services.weight_calculator import resolve_unit_weight

logger = logging.getLogger(__name__)


def _whole_number(value, field_name):
    label = field_name.replace("_", " ").capitalize()
    if isinstance(value, float) and not value.is_integer():
        raise InvalidRequestError(f"{label} must be a whole number.", details={field_name: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(
            f"{label} must be a whole number.",
            details={field_name: value},
        ) from None


def _positive_quantity(value, field_name="quantity"):
    quantity = _whole_number(value, field_name)
    if quantity <= 0:
        raise InvalidRequestError(
            f"{field_name.replace('_', ' ').capitalize()} must be a positive number.",
            details={field_name: value},
        )
    return quantity


def _non_negative_quantity(value, field_name):
    if value is None or value == "":
        return 0
    quantity = _whole_number(value, field_name)
    if quantity < 0:
        raise InvalidRequestError(
            f"{field_name.replace('_', ' ').capitalize()} cannot be negative.",
            details={field_name: value},
        )
    return quantity


def _result(truck_id, product_id, order_id, quantity_change, row):
    qty_full = row.get("qty_full") or 0
    qty_reserved = row.get("qty_reserved") or 0
    return {
        "success": True,
        "truck_id": truck_id,
        "product_id": product_id,
        "order_id": order_id,
        "quantity_reserved": quantity_change,
        "total_reserved": qty_reserved,
        "available_remaining": qty_full - qty_reserved,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }


@translate_storage_errors
def reserve(truck_id, product_id, quantity, order_id, user_id=None):
    quantity = _positive_quantity(quantity)
    with db.write_transaction() as connection:
        created = db.ensure_truck_inventory_row(connection, truck_id, product_id)
        reserved = db.try_reserve_truck_stock(connection, truck_id, product_id, quantity)
        if reserved:
            db.add_stock_movement(
                connection,
                {
                    "truck_id": truck_id,
                    "product_id": product_id,
                    "order_id": order_id,
                    "movement_type": "reserve",
                    "qty_reserved_change": quantity,
                    "user_id": user_id,
                },
            )
        row = db.get_truck_inventory_row(truck_id, product_id, connection=connection)

    if created:
        logger.info("Created truck inventory row truck=%s product=%s", truck_id, product_id)
    if not reserved:
        available_qty = (row.get("qty_full") or 0) - (row.get("qty_reserved") or 0)
        logger.info(
            "Reservation rejected truck=%s product=%s order=%s requested=%s available=%s",
            truck_id,
            product_id,
            order_id,
            quantity,
            available_qty,
        )
        raise InsufficientStockError(available_qty, quantity)

    logger.info(
        "Truck inventory reserved truck=%s product=%s quantity=%s order=%s user=%s",
        truck_id,
        product_id,
        quantity,
        order_id,
        user_id,
    )
    return _result(truck_id, product_id, order_id, quantity, row)


@translate_storage_errors
def release(truck_id, product_id, quantity, order_id, user_id=None):
    quantity = _positive_quantity(quantity)
    with db.write_transaction() as connection:
        released = db.try_release_truck_stock(connection, truck_id, product_id, quantity)
        row = db.get_truck_inventory_row(truck_id, product_id, connection=connection)
        if not row:
            raise NotFoundError(
                "Truck inventory record not found",
                details={"truck_id": truck_id, "product_id": product_id},
            )
        if not released:
            current_reserved = row.get("qty_reserved") or 0
            raise InvalidRequestError(
                "Cannot release more than reserved. "
                f"Reserved: {current_reserved}, Requested release: {quantity}",
                details={"reserved_qty": current_reserved, "requested_qty": quantity},
            )
        db.add_stock_movement(
            connection,
            {
                "truck_id": truck_id,
                "product_id": product_id,
                "order_id": order_id,
                "movement_type": "release",
                "qty_reserved_change": -quantity,
                "user_id": user_id,
            },
        )

    logger.info(
        "Truck inventory reservation released truck=%s product=%s quantity=%s order=%s user=%s",
        truck_id,
        product_id,
        quantity,
        order_id,
        user_id,
    )
    return _result(truck_id, product_id, order_id, -quantity, row)


@translate_storage_errors
def check_availability(truck_id, product_id, quantity):
    quantity = _non_negative_quantity(quantity, "quantity")
    row = db.get_truck_inventory_row(truck_id, product_id) or {}
    qty_full = row.get("qty_full") or 0
    qty_reserved = row.get("qty_reserved") or 0
    available_qty = qty_full - qty_reserved
    return {
        "available": available_qty >= quantity,
        "available_qty": available_qty,
        "reserved_qty": qty_reserved,
        "qty_full": qty_full,
    }


@translate_storage_errors
def get_truck_inventory(truck_id):
    inventory = []
    for row in db.list_truck_inventory(truck_id):
        qty_full = row.get("qty_full") or 0
        qty_reserved = row.get("qty_reserved") or 0
        inventory.append(
            dict(
                row,
                qty_full=qty_full,
                qty_empty=row.get("qty_empty") or 0,
                qty_reserved=qty_reserved,
                qty_available=qty_full - qty_reserved,
            )
        )
    return inventory


def _cylinder_weights(product):
    """Return ``(full_kg, empty_kg)`` for one cylinder of the product."""
    full_kg, _ = resolve_unit_weight(dict(product, variant_name="full"))
    tare_kg = float(product.get("tare_weight_kg") or 0)
    return full_kg, tare_kg if tare_kg > 0 else EMPTY_CYLINDER_KG


def _check_load_capacity(connection, truck, product, qty_full, qty_empty):
    if not truck.get("active"):
        raise InvalidRequestError("Truck is inactive", details={"truck_id": truck["id"]})

    current_cylinders = 0
    current_weight_kg = 0.0
    for row in db.list_truck_inventory(truck["id"], connection=connection):
        full_kg, empty_kg = _cylinder_weights(row)
        row_full = row.get("qty_full") or 0
        row_empty = row.get("qty_empty") or 0
        current_cylinders += row_full + row_empty
        current_weight_kg += row_full * full_kg + row_empty * empty_kg

    full_kg, empty_kg = _cylinder_weights(product)
    cylinders_to_add = qty_full + qty_empty
    weight_to_add_kg = qty_full * full_kg + qty_empty * empty_kg
    total_cylinders = current_cylinders + cylinders_to_add
    total_weight_kg = current_weight_kg + weight_to_add_kg

    cylinder_capacity = truck.get("capacity_cylinders")
    if cylinder_capacity and total_cylinders > cylinder_capacity:
        raise InvalidRequestError(
            f"Cylinder capacity exceeded: trying to load {cylinders_to_add} cylinders but only "
            f"{cylinder_capacity - current_cylinders} slots available "
            f"({total_cylinders}/{cylinder_capacity} total)",
            details={
                "current_cylinders": current_cylinders,
                "cylinders_to_add": cylinders_to_add,
                "cylinder_capacity": cylinder_capacity,
                "cylinder_overflow": total_cylinders - cylinder_capacity,
            },
        )

    # A truck with no configured capacity is not weight-limited.
    weight_capacity_kg = truck_total_capacity(truck)
    if weight_capacity_kg > 0 and total_weight_kg > weight_capacity_kg:
        raise InvalidRequestError(
            f"Weight capacity exceeded: trying to load {weight_to_add_kg:.1f}kg but only "
            f"{weight_capacity_kg - current_weight_kg:.1f}kg capacity available "
            f"({total_weight_kg:.1f}/{weight_capacity_kg:.1f}kg total)",
            details={
                "current_weight_kg": current_weight_kg,
                "weight_to_add_kg": weight_to_add_kg,
                "weight_capacity_kg": weight_capacity_kg,
                "weight_overflow_kg": total_weight_kg - weight_capacity_kg,
            },
        )


@translate_storage_errors
def load_stock(truck_id, product_id, qty_full=0, qty_empty=0, user_id=None, connection=None):
    """Add stock to a truck after checking its cylinder slots and weight limit.

    With ``connection`` the load joins the caller's transaction, so several
    loads on one sheet are checked against each other.
    """
    qty_full = _non_negative_quantity(qty_full, "qty_full")
    qty_empty = _non_negative_quantity(qty_empty, "qty_empty")
    if not qty_full and not qty_empty:
        raise InvalidRequestError("Nothing to load: qty_full and qty_empty are both zero.")

    transaction = db.use_connection(connection) if connection is not None else db.write_transaction()
    with transaction as active:
        truck = db.get_truck(truck_id, connection=active)
        if not truck:
            raise NotFoundError("Truck not found", details={"truck_id": truck_id})
        product = db.get_product(product_id, connection=active)
        if not product:
            raise NotFoundError("Product not found", details={"product_id": product_id})
        _check_load_capacity(active, truck, product, qty_full, qty_empty)
        db.add_truck_stock(active, truck_id, product_id, qty_full, qty_empty)
        db.add_stock_movement(
            active,
            {
                "truck_id": truck_id,
                "product_id": product_id,
                "movement_type": "load",
                "qty_full_change": qty_full,
                "qty_empty_change": qty_empty,
                "user_id": user_id,
            },
        )
        row = db.get_truck_inventory_row(truck_id, product_id, connection=active)

    logger.info(
        "Loaded truck=%s product=%s full=%s empty=%s user=%s",
        truck_id,
        product_id,
        qty_full,
        qty_empty,
        user_id,
    )
    return row


@translate_storage_errors
def unload_stock(truck_id, product_id, qty_full=0, qty_empty=0, user_id=None):
    qty_full = _non_negative_quantity(qty_full, "qty_full")
    qty_empty = _non_negative_quantity(qty_empty, "qty_empty")
    if not qty_full and not qty_empty:
        raise InvalidRequestError("Nothing to unload: qty_full and qty_empty are both zero.")

    with db.write_transaction() as connection:
        removed = db.try_remove_truck_stock(connection, truck_id, product_id, qty_full, qty_empty)
        row = db.get_truck_inventory_row(truck_id, product_id, connection=connection)
        if not row:
            raise NotFoundError(
                "Truck inventory record not found",
                details={"truck_id": truck_id, "product_id": product_id},
            )
        if not removed:
            unreserved_full = (row.get("qty_full") or 0) - (row.get("qty_reserved") or 0)
            raise InvalidRequestError(
                "Cannot unload reserved or missing stock. "
                f"Unreserved full: {unreserved_full}, Empty: {row.get('qty_empty') or 0}",
                details={
                    "unreserved_full_qty": unreserved_full,
                    "qty_empty": row.get("qty_empty") or 0,
                    "requested_full": qty_full,
                    "requested_empty": qty_empty,
                },
            )
        db.add_stock_movement(
            connection,
            {
                "truck_id": truck_id,
                "product_id": product_id,
                "movement_type": "unload",
                "qty_full_change": -qty_full,
                "qty_empty_change": -qty_empty,
                "user_id": user_id,
            },
        )

    logger.info(
        "Unloaded truck=%s product=%s full=%s empty=%s user=%s",
        truck_id,
        product_id,
        qty_full,
        qty_empty,
        user_id,
    )
    return row


@translate_storage_errors
def list_stock_movements(truck_id, product_id=None, limit=None):
    return db.list_stock_movements(truck_id, product_id=product_id, limit=limit)
