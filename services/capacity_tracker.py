import db
from services.errors import NotFoundError, translate_storage_errors
from services.settings import KG_PER_CYLINDER


def truck_total_capacity(truck):
    capacity_kg = truck.get("capacity_kg")
    if capacity_kg:
        return float(capacity_kg)
    return float(truck.get("capacity_cylinders") or 0) * KG_PER_CYLINDER


def build_capacity_snapshot(truck, allocated_weight_kg, active_order_count):
    total_capacity_kg = truck_total_capacity(truck)
    allocated_weight_kg = float(allocated_weight_kg or 0)
    utilization = (
        (allocated_weight_kg / total_capacity_kg) * 100 if total_capacity_kg > 0 else 0.0
    )
    return {
        "truck_id": truck.get("id"),
        "total_capacity_kg": total_capacity_kg,
        "allocated_weight_kg": allocated_weight_kg,
        "available_capacity_kg": total_capacity_kg - allocated_weight_kg,
        "utilization_percent": round(utilization, 2),
        "active_order_count": int(active_order_count or 0),
        "is_overallocated": allocated_weight_kg > total_capacity_kg,
    }


@translate_storage_errors
def get_truck_capacity(truck_id, allocation_date, connection=None, truck=None):
    with db.use_connection(connection) as active:
        if truck is None:
            truck = db.get_truck(truck_id, connection=active)
        if not truck:
            raise NotFoundError("Truck not found", details={"truck_id": truck_id})
        totals = db.sum_truck_allocations(truck["id"], allocation_date, connection=active)
    return build_capacity_snapshot(
        truck,
        totals["allocated_weight_kg"],
        totals["active_order_count"],
    )
