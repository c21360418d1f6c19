import logging
import sqlite3

import db
from services.allocation_manager import normalize_allocation_date
from services.capacity_tracker import get_truck_capacity, truck_total_capacity
from services.errors import AllocationError, translate_storage_errors

logger = logging.getLogger(__name__)


def calculate_route_status(allocations):
    if not allocations:
        return "unassigned"

    statuses = [allocation.get("status") for allocation in allocations]
    if all(status == "delivered" for status in statuses):
        return "completed"
    if any(status == "loaded" for status in statuses):
        return "in_progress"
    if all(status == "planned" for status in statuses):
        return "planned"
    return "mixed"


def _format_allocation(row):
    return {
        "id": row["id"],
        "truck_id": row["truck_id"],
        "order_id": row["order_id"],
        "allocation_date": row["allocation_date"],
        "estimated_weight_kg": row["estimated_weight_kg"],
        "status": row["status"],
        "stop_sequence": row.get("stop_sequence"),
        "allocated_by": row.get("allocated_by"),
        "allocated_at": row.get("allocated_at"),
        "order": {
            "id": row["order_id"],
            "customer_name": row.get("customer_name"),
            "status": row.get("order_status"),
            "scheduled_date": row.get("scheduled_date"),
            "total_amount": row.get("total_amount"),
            "delivery_address": {
                "line1": row.get("delivery_line1"),
                "city": row.get("delivery_city"),
                "postal_code": row.get("delivery_postal_code"),
            },
        },
    }


@translate_storage_errors
def get_daily_schedule(schedule_date):
    schedule_date = normalize_allocation_date(schedule_date)
    schedule = []
    for truck in db.list_active_trucks():
        try:
            capacity_info = get_truck_capacity(truck["id"], schedule_date, truck=truck)
            rows = db.list_truck_allocations_with_orders(truck["id"], schedule_date)
        except (AllocationError, sqlite3.Error):
            logger.exception(
                "Error fetching schedule for truck=%s date=%s; skipping truck",
                truck["id"],
                schedule_date,
            )
            continue

        allocations = [_format_allocation(row) for row in rows]
        schedule.append(
            {
                "truck": dict(truck, capacity_kg=truck_total_capacity(truck)),
                "capacity_info": capacity_info,
                "allocations": allocations,
                "total_orders": len(allocations),
                "route_status": calculate_route_status(allocations),
            }
        )
    return schedule


def summarize_fleet_utilization(schedule):
    total_capacity_kg = sum(entry["capacity_info"]["total_capacity_kg"] for entry in schedule)
    total_allocated_kg = sum(entry["capacity_info"]["allocated_weight_kg"] for entry in schedule)
    overall_utilization = (
        (total_allocated_kg / total_capacity_kg) * 100 if total_capacity_kg > 0 else 0.0
    )
    return {
        "total_capacity_kg": total_capacity_kg,
        "total_allocated_kg": total_allocated_kg,
        "overall_utilization": round(overall_utilization, 2),
        "active_trucks": len(schedule),
        "overallocated_trucks": sum(
            1 for entry in schedule if entry["capacity_info"]["is_overallocated"]
        ),
    }
