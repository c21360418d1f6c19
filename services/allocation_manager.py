import logging
import sqlite3
from datetime import date, datetime

import db
from services import allocation_scorer, settings, weight_calculator
from services.capacity_tracker import get_truck_capacity
from services.errors import (
    AllocationError,
    InvalidRequestError,
    NotFoundError,
    translate_storage_errors,
)

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    "planned": {"loaded", "cancelled"},
    "loaded": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}


def normalize_allocation_date(value):
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = (value or "").strip() if isinstance(value, str) else ""
    if not text:
        raise InvalidRequestError("Allocation date is required.")
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        raise InvalidRequestError(
            "Allocation date must be an ISO date (YYYY-MM-DD).",
            details={"allocation_date": text},
        ) from None


def _sync_order_assignment(connection, allocation_id, order_id, truck_id, assigned_date, operation):
    """Write the order's denormalized assignment fields inside a savepoint.

    A failure here rolls back only the savepoint: the allocation change stands,
    the failure is logged and recorded as an open sync issue for reconciliation.
    """
    try:
        with db.savepoint(connection, "order_assignment"):
            db.set_order_assignment(connection, order_id, truck_id, assigned_date)
        return True
    except sqlite3.Error as exc:
        error_text = str(exc)
        logger.error(
            "Failed to %s order assignment for order=%s allocation=%s: %s",
            operation,
            order_id,
            allocation_id,
            error_text,
        )
    try:
        db.add_sync_issue(
            connection,
            {
                "allocation_id": allocation_id,
                "order_id": order_id,
                "operation": operation,
                "error": error_text,
            },
        )
    except sqlite3.Error:
        logger.exception("Failed to record sync issue for order=%s", order_id)
    return False


def _repoint_order_assignment(connection, allocation_id, order_id):
    """Point the order at its latest live allocation after one goes away.

    Another date, or a re-allocation made after a cancel, may still hold the
    order; only when none is left are the fields cleared.
    """
    latest = db.find_latest_live_allocation(order_id, connection=connection)
    truck_id = latest["truck_id"] if latest else None
    assigned_date = latest["allocation_date"] if latest else None
    order = db.get_order(order_id, connection=connection) or {}
    if order.get("assigned_truck_id") == truck_id and order.get("truck_assigned_date") == assigned_date:
        return True
    return _sync_order_assignment(
        connection,
        allocation_id,
        order_id,
        truck_id,
        assigned_date,
        operation="assign" if latest else "clear",
    )


def _choose_truck(connection, allocation_date, order_weight):
    suggestions = allocation_scorer.rank_trucks(
        allocation_date,
        order_weight=order_weight,
        connection=connection,
    )
    chosen = allocation_scorer.best_truck(suggestions)
    if not chosen:
        raise InvalidRequestError(
            "No suitable truck found for this order",
            details={"order_weight_kg": order_weight},
        )
    return chosen["truck_id"]


@translate_storage_errors
def allocate_order(
    order_id,
    allocation_date,
    truck_id=None,
    force=False,
    user_id=None,
    stop_sequence=None,
):
    allocation_date = normalize_allocation_date(allocation_date)
    # Weighed before the write lock; fallback events commit on their own connection.
    order_weight = weight_calculator.calculate_order_weight(order_id)
    sync_ok = True
    try:
        with db.write_transaction() as connection:
            order = db.get_order(order_id, connection=connection)
            if not order:
                raise NotFoundError("Order not found", details={"order_id": order_id})

            if settings.unique_allocation_per_date():
                existing = db.find_active_allocation(order_id, allocation_date, connection=connection)
                if existing:
                    raise InvalidRequestError(
                        "Order already has an active allocation for this date",
                        details={"allocation_id": existing["id"], "truck_id": existing["truck_id"]},
                    )

            if truck_id is None:
                truck_id = _choose_truck(connection, allocation_date, order_weight)
            truck = db.get_truck(truck_id, connection=connection)
            if not truck:
                raise NotFoundError("Truck not found", details={"truck_id": truck_id})
            if not truck.get("active"):
                raise InvalidRequestError("Truck is inactive", details={"truck_id": truck_id})

            capacity = get_truck_capacity(
                truck_id,
                allocation_date,
                connection=connection,
                truck=truck,
            )
            if not force and capacity["available_capacity_kg"] < order_weight:
                raise InvalidRequestError(
                    f"Order weight ({order_weight}kg) exceeds truck capacity "
                    f"({capacity['available_capacity_kg']}kg available)",
                    details={
                        "order_weight_kg": order_weight,
                        "available_capacity_kg": capacity["available_capacity_kg"],
                    },
                )

            allocation_id = db.insert_allocation(
                connection,
                {
                    "truck_id": truck_id,
                    "order_id": order_id,
                    "allocation_date": allocation_date,
                    "estimated_weight_kg": order_weight,
                    "status": "planned",
                    "stop_sequence": stop_sequence,
                    "allocated_by": user_id,
                },
            )
            sync_ok = _sync_order_assignment(
                connection,
                allocation_id,
                order_id,
                truck_id,
                allocation_date,
                operation="assign",
            )
            allocation = db.get_allocation(allocation_id, connection=connection)
    except AllocationError:
        logger.info("Allocation rejected for order=%s date=%s", order_id, allocation_date)
        raise

    utilization_after = (
        (capacity["allocated_weight_kg"] + order_weight) / capacity["total_capacity_kg"] * 100
        if capacity["total_capacity_kg"] > 0
        else 0.0
    )
    if utilization_after > settings.high_utilization_warn_pct():
        logger.warning(
            "High utilization after allocation: truck=%s date=%s utilization=%.1f%%",
            truck_id,
            allocation_date,
            utilization_after,
        )
    logger.info(
        "Order %s allocated to truck %s for %s (%skg, forced=%s)",
        order_id,
        truck_id,
        allocation_date,
        order_weight,
        bool(force),
    )
    allocation["order_sync_ok"] = sync_ok
    return allocation


@translate_storage_errors
def remove_allocation(allocation_id):
    with db.write_transaction() as connection:
        allocation = db.get_allocation(allocation_id, connection=connection)
        if not allocation:
            raise NotFoundError(
                "Truck allocation not found",
                details={"allocation_id": allocation_id},
            )
        db.delete_allocation(connection, allocation_id)
        _repoint_order_assignment(connection, allocation_id, allocation["order_id"])
    logger.info("Truck allocation %s removed", allocation_id)


@translate_storage_errors
def update_allocation(allocation_id, status=None, stop_sequence=None):
    fields = {}
    with db.write_transaction() as connection:
        allocation = db.get_allocation(allocation_id, connection=connection)
        if not allocation:
            raise NotFoundError(
                "Truck allocation not found",
                details={"allocation_id": allocation_id},
            )

        if status is not None:
            status = str(status).strip().lower()
            if status not in db.ALLOCATION_STATUSES:
                raise InvalidRequestError(
                    f"Unknown allocation status: {status}",
                    details={"allowed": list(db.ALLOCATION_STATUSES)},
                )
            current = allocation["status"]
            if status != current and status not in STATUS_TRANSITIONS.get(current, set()):
                raise InvalidRequestError(
                    f"Cannot change allocation status from {current} to {status}",
                    details={"current_status": current, "requested_status": status},
                )
            fields["status"] = status

        if stop_sequence is not None:
            try:
                stop_sequence = int(stop_sequence)
            except (TypeError, ValueError):
                raise InvalidRequestError("Stop sequence must be a whole number.") from None
            if stop_sequence <= 0:
                raise InvalidRequestError("Stop sequence must be a positive number.")
            fields["stop_sequence"] = stop_sequence

        if fields:
            db.update_allocation_fields(connection, allocation_id, fields)
        if fields.get("status") == "cancelled" and allocation["status"] != "cancelled":
            _repoint_order_assignment(connection, allocation_id, allocation["order_id"])
        updated = db.get_allocation(allocation_id, connection=connection)

    if fields:
        logger.info("Truck allocation %s updated: %s", allocation_id, fields)
    return updated


@translate_storage_errors
def list_allocations(allocation_date, truck_id=None):
    allocation_date = normalize_allocation_date(allocation_date)
    return db.list_allocations(allocation_date, truck_id=truck_id)


def plan_allocations(order_ids, allocation_date, user_id=None):
    """Auto-assign a batch of orders for one date, heaviest first.

    Each order goes through ``allocate_order`` on its own, so a rejected order
    does not undo the ones already placed.
    """
    allocation_date = normalize_allocation_date(allocation_date)
    weights = {}
    for order_id in order_ids or []:
        weights[order_id] = weight_calculator.calculate_order_weight(order_id)
    ordered = sorted(weights, key=lambda order_id: -weights[order_id])

    allocated = []
    unallocated = []
    for order_id in ordered:
        try:
            allocation = allocate_order(order_id, allocation_date, user_id=user_id)
        except (InvalidRequestError, NotFoundError) as exc:
            unallocated.append(
                {
                    "order_id": order_id,
                    "estimated_weight_kg": weights[order_id],
                    "reason": exc.message,
                }
            )
            continue
        allocated.append(allocation)

    logger.info(
        "Planned allocations for %s: %s allocated, %s unallocated",
        allocation_date,
        len(allocated),
        len(unallocated),
    )
    return {
        "allocation_date": allocation_date,
        "allocated": allocated,
        "unallocated": unallocated,
        "summary": {
            "total_orders": len(ordered),
            "allocated_orders": len(allocated),
        },
    }
