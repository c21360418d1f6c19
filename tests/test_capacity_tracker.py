import sqlite3

import pytest

import db
from services import capacity_tracker
from services.errors import NotFoundError, StorageFaultError

ALLOCATION_DATE = "2026-03-02"


def _allocate(connection, truck_id, order_id, weight, status="planned", allocation_date=ALLOCATION_DATE):
    return db.insert_allocation(
        connection,
        {
            "truck_id": truck_id,
            "order_id": order_id,
            "allocation_date": allocation_date,
            "estimated_weight_kg": weight,
            "status": status,
        },
    )


def test_capacity_counts_only_active_allocations_for_the_date(make_truck, make_order):
    truck_id = make_truck(capacity_kg=1000)
    order_ids = [make_order() for _ in range(4)]
    with db.use_connection() as connection:
        _allocate(connection, truck_id, order_ids[0], 250)
        _allocate(connection, truck_id, order_ids[1], 150, status="loaded")
        _allocate(connection, truck_id, order_ids[2], 300, status="cancelled")
        _allocate(connection, truck_id, order_ids[3], 500, allocation_date="2026-03-03")

    capacity = capacity_tracker.get_truck_capacity(truck_id, ALLOCATION_DATE)

    assert capacity == {
        "truck_id": truck_id,
        "total_capacity_kg": 1000.0,
        "allocated_weight_kg": 400.0,
        "available_capacity_kg": 600.0,
        "utilization_percent": 40.0,
        "active_order_count": 2,
        "is_overallocated": False,
    }


def test_capacity_falls_back_to_cylinder_count(make_truck):
    truck_id = make_truck(capacity_kg=None, capacity_cylinders=20)
    capacity = capacity_tracker.get_truck_capacity(truck_id, ALLOCATION_DATE)
    assert capacity["total_capacity_kg"] == 540.0
    assert capacity["available_capacity_kg"] == 540.0


def test_zero_capacity_truck_reports_zero_utilization(make_truck, make_order):
    truck_id = make_truck(capacity_kg=None, capacity_cylinders=None)
    with db.use_connection() as connection:
        _allocate(connection, truck_id, make_order(), 10)

    capacity = capacity_tracker.get_truck_capacity(truck_id, ALLOCATION_DATE)
    assert capacity["total_capacity_kg"] == 0.0
    assert capacity["utilization_percent"] == 0.0
    assert capacity["available_capacity_kg"] == -10.0
    assert capacity["is_overallocated"] is True


def test_utilization_is_rounded_to_two_places(make_truck, make_order):
    truck_id = make_truck(capacity_kg=3000)
    with db.use_connection() as connection:
        _allocate(connection, truck_id, make_order(), 1000)

    capacity = capacity_tracker.get_truck_capacity(truck_id, ALLOCATION_DATE)
    assert capacity["utilization_percent"] == 33.33


def test_unknown_truck_raises_not_found():
    with pytest.raises(NotFoundError) as exc_info:
        capacity_tracker.get_truck_capacity(424242, ALLOCATION_DATE)
    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "Truck not found"


def test_failed_truck_read_is_a_storage_fault_not_a_missing_truck(monkeypatch, make_truck):
    truck_id = make_truck()
    locked = sqlite3.OperationalError("database is locked")

    def _failing_get_truck(truck_id, connection=None):
        raise locked

    monkeypatch.setattr(db, "get_truck", _failing_get_truck)

    with pytest.raises(StorageFaultError) as exc_info:
        capacity_tracker.get_truck_capacity(truck_id, ALLOCATION_DATE)

    assert not isinstance(exc_info.value, NotFoundError)
    assert exc_info.value.status_code == 500
    assert exc_info.value.__cause__ is locked
    assert exc_info.value.message == "Storage failure in get_truck_capacity: database is locked"
