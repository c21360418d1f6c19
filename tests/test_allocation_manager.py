import sqlite3
import threading
from datetime import date

import pytest

import db
from services import allocation_manager, reconciliation
from services.errors import InvalidRequestError, NotFoundError, StorageFaultError

ALLOCATION_DATE = "2026-03-02"


def test_allocate_to_explicit_truck_sets_order_assignment(make_truck, make_order):
    truck_id = make_truck(capacity_kg=1000)
    order_id = make_order(weight_kg=400)

    allocation = allocation_manager.allocate_order(
        order_id,
        ALLOCATION_DATE,
        truck_id=truck_id,
        user_id="dispatcher-1",
        stop_sequence=2,
    )

    assert allocation["truck_id"] == truck_id
    assert allocation["order_id"] == order_id
    assert allocation["allocation_date"] == ALLOCATION_DATE
    assert allocation["estimated_weight_kg"] == 400.0
    assert allocation["status"] == "planned"
    assert allocation["stop_sequence"] == 2
    assert allocation["allocated_by"] == "dispatcher-1"
    assert allocation["order_sync_ok"] is True

    order = db.get_order(order_id)
    assert order["assigned_truck_id"] == truck_id
    assert order["truck_assigned_date"] == ALLOCATION_DATE


def test_allocation_date_is_normalized(make_truck, make_order):
    truck_id = make_truck()
    allocation = allocation_manager.allocate_order(
        make_order(weight_kg=10),
        date(2026, 3, 2),
        truck_id=truck_id,
    )
    assert allocation["allocation_date"] == ALLOCATION_DATE

    with pytest.raises(InvalidRequestError):
        allocation_manager.allocate_order(make_order(weight_kg=10), "03/02/2026", truck_id=truck_id)
    with pytest.raises(InvalidRequestError):
        allocation_manager.allocate_order(make_order(weight_kg=10), "", truck_id=truck_id)


def test_allocate_rejects_when_capacity_exceeded(make_truck, make_order):
    truck_id = make_truck(capacity_kg=500)
    allocation_manager.allocate_order(make_order(weight_kg=400), ALLOCATION_DATE, truck_id=truck_id)
    order_id = make_order(weight_kg=200)

    with pytest.raises(InvalidRequestError) as exc_info:
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    assert exc_info.value.message == "Order weight (200.0kg) exceeds truck capacity (100.0kg available)"
    assert db.find_active_allocation(order_id, ALLOCATION_DATE) is None
    assert db.get_order(order_id)["assigned_truck_id"] is None


def test_force_allows_overallocation(make_truck, make_order):
    truck_id = make_truck(capacity_kg=500)
    allocation_manager.allocate_order(make_order(weight_kg=400), ALLOCATION_DATE, truck_id=truck_id)

    allocation = allocation_manager.allocate_order(
        make_order(weight_kg=200),
        ALLOCATION_DATE,
        truck_id=truck_id,
        force=True,
    )

    assert allocation["status"] == "planned"
    totals = db.sum_truck_allocations(truck_id, ALLOCATION_DATE)
    assert totals["allocated_weight_kg"] == 600.0


def test_auto_allocation_picks_best_scoring_truck(make_truck, make_order):
    make_truck(capacity_kg=300, fleet_number="A-SMALL")
    snug = make_truck(capacity_kg=600, fleet_number="B-SNUG")
    make_truck(capacity_kg=5000, fleet_number="C-ROOMY")

    allocation = allocation_manager.allocate_order(make_order(weight_kg=400), ALLOCATION_DATE)

    assert allocation["truck_id"] == snug


def test_auto_allocation_without_suitable_truck(make_truck, make_order):
    make_truck(capacity_kg=100)
    order_id = make_order(weight_kg=400)

    with pytest.raises(InvalidRequestError) as exc_info:
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE)

    assert exc_info.value.message == "No suitable truck found for this order"
    assert db.list_allocations(ALLOCATION_DATE) == []


def test_allocate_validates_order_and_truck(make_truck, make_order):
    inactive = make_truck(active=False)
    order_id = make_order(weight_kg=10)

    with pytest.raises(NotFoundError):
        allocation_manager.allocate_order(987654, ALLOCATION_DATE, truck_id=inactive)
    with pytest.raises(NotFoundError):
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=987654)
    with pytest.raises(InvalidRequestError) as exc_info:
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=inactive)
    assert exc_info.value.message == "Truck is inactive"


def test_one_active_allocation_per_order_and_date(make_truck, make_order):
    first = make_truck()
    second = make_truck()
    order_id = make_order(weight_kg=100)
    allocation = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=first)

    with pytest.raises(InvalidRequestError) as exc_info:
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=second)
    assert exc_info.value.details["allocation_id"] == allocation["id"]

    # Another date, or after cancelling, is fine.
    allocation_manager.allocate_order(order_id, "2026-03-03", truck_id=second)
    allocation_manager.update_allocation(allocation["id"], status="cancelled")
    allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=second)

    order = db.get_order(order_id)
    assert (order["assigned_truck_id"], order["truck_assigned_date"]) == (second, ALLOCATION_DATE)
    assert reconciliation.find_assignment_drift() == []


def test_duplicate_allocations_allowed_when_uniqueness_disabled(monkeypatch, make_truck, make_order):
    monkeypatch.setenv("ALLOCATION_UNIQUE_PER_DATE", "false")
    first = make_truck()
    second = make_truck()
    order_id = make_order(weight_kg=100)

    allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=first)
    allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=second)

    assert len(db.list_allocations(ALLOCATION_DATE)) == 2


def test_order_sync_failure_keeps_allocation_and_reconciles(monkeypatch, make_truck, make_order):
    truck_id = make_truck()
    order_id = make_order(weight_kg=100)

    def _failing_assignment(connection, order_id, truck_id, assigned_date):
        raise sqlite3.OperationalError("database table is locked: orders")

    with monkeypatch.context() as patched:
        patched.setattr(db, "set_order_assignment", _failing_assignment)
        allocation = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    assert allocation["order_sync_ok"] is False
    assert db.get_allocation(allocation["id"]) is not None
    order = db.get_order(order_id)
    assert order["assigned_truck_id"] is None
    issues = db.list_sync_issues()
    assert len(issues) == 1
    assert issues[0]["order_id"] == order_id
    assert issues[0]["operation"] == "assign"
    assert "locked" in issues[0]["error"]

    preview = reconciliation.reconcile_order_assignments(dry_run=True)
    assert preview["dry_run"] is True
    assert [entry["order_id"] for entry in preview["drift"]] == [order_id]
    assert db.get_order(order_id)["assigned_truck_id"] is None

    result = reconciliation.reconcile_order_assignments()
    assert result["repaired"] == 1
    assert result["resolved_issues"] == 1
    order = db.get_order(order_id)
    assert order["assigned_truck_id"] == truck_id
    assert order["truck_assigned_date"] == ALLOCATION_DATE
    assert db.list_sync_issues() == []
    assert reconciliation.find_assignment_drift() == []


def test_remove_allocation_clears_order(make_truck, make_order):
    truck_id = make_truck()
    order_id = make_order(weight_kg=100)
    allocation = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    allocation_manager.remove_allocation(allocation["id"])

    assert db.get_allocation(allocation["id"]) is None
    order = db.get_order(order_id)
    assert order["assigned_truck_id"] is None
    assert order["truck_assigned_date"] is None

    with pytest.raises(NotFoundError) as exc_info:
        allocation_manager.remove_allocation(allocation["id"])
    assert exc_info.value.message == "Truck allocation not found"


def test_remove_with_failed_clear_is_repaired_by_reconciliation(monkeypatch, make_truck, make_order):
    truck_id = make_truck()
    order_id = make_order(weight_kg=100)
    allocation = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    def _failing_assignment(connection, order_id, truck_id, assigned_date):
        raise sqlite3.OperationalError("disk I/O error")

    with monkeypatch.context() as patched:
        patched.setattr(db, "set_order_assignment", _failing_assignment)
        allocation_manager.remove_allocation(allocation["id"])

    assert db.get_allocation(allocation["id"]) is None
    assert db.get_order(order_id)["assigned_truck_id"] == truck_id

    drift = reconciliation.find_assignment_drift()
    assert drift == [
        {
            "order_id": order_id,
            "allocation_id": None,
            "current_truck_id": truck_id,
            "current_assigned_date": ALLOCATION_DATE,
            "expected_truck_id": None,
            "expected_assigned_date": None,
        }
    ]
    reconciliation.reconcile_order_assignments()
    assert db.get_order(order_id)["assigned_truck_id"] is None


def test_removing_one_date_keeps_assignment_to_another(make_truck, make_order):
    first = make_truck()
    second = make_truck()
    order_id = make_order(weight_kg=100)
    monday = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=first)
    tuesday = allocation_manager.allocate_order(order_id, "2026-03-03", truck_id=second)

    allocation_manager.remove_allocation(monday["id"])

    order = db.get_order(order_id)
    assert (order["assigned_truck_id"], order["truck_assigned_date"]) == (second, "2026-03-03")
    assert reconciliation.find_assignment_drift() == []
    assert db.list_sync_issues() == []

    allocation_manager.remove_allocation(tuesday["id"])
    order = db.get_order(order_id)
    assert (order["assigned_truck_id"], order["truck_assigned_date"]) == (None, None)


def test_removing_newest_allocation_falls_back_to_previous_one(make_truck, make_order):
    first = make_truck()
    second = make_truck()
    order_id = make_order(weight_kg=100)
    allocation_manager.allocate_order(order_id, "2026-03-03", truck_id=first)
    earlier_date = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=second)
    assert db.get_order(order_id)["assigned_truck_id"] == second
    assert reconciliation.find_assignment_drift() == []

    allocation_manager.remove_allocation(earlier_date["id"])

    order = db.get_order(order_id)
    assert (order["assigned_truck_id"], order["truck_assigned_date"]) == (first, "2026-03-03")
    assert reconciliation.find_assignment_drift() == []


def test_deleting_cancelled_allocation_keeps_reallocation(make_truck, make_order):
    first = make_truck()
    second = make_truck()
    order_id = make_order(weight_kg=100)
    cancelled = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=first)
    allocation_manager.update_allocation(cancelled["id"], status="cancelled")
    assert db.get_order(order_id)["assigned_truck_id"] is None
    allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=second)

    allocation_manager.remove_allocation(cancelled["id"])

    order = db.get_order(order_id)
    assert (order["assigned_truck_id"], order["truck_assigned_date"]) == (second, ALLOCATION_DATE)
    assert reconciliation.find_assignment_drift() == []


def test_cancelling_one_date_repoints_order_to_remaining_allocation(make_truck, make_order):
    first = make_truck()
    second = make_truck()
    order_id = make_order(weight_kg=100)
    allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=first)
    tuesday = allocation_manager.allocate_order(order_id, "2026-03-03", truck_id=second)

    allocation_manager.update_allocation(tuesday["id"], status="cancelled")

    order = db.get_order(order_id)
    assert (order["assigned_truck_id"], order["truck_assigned_date"]) == (first, ALLOCATION_DATE)
    assert reconciliation.find_assignment_drift() == []


def test_failed_order_read_is_a_storage_fault(monkeypatch, make_truck, make_order):
    truck_id = make_truck()
    order_id = make_order(weight_kg=100)
    disk_error = sqlite3.OperationalError("disk I/O error")

    def _failing_get_order(order_id, connection=None):
        raise disk_error

    monkeypatch.setattr(db, "get_order", _failing_get_order)

    with pytest.raises(StorageFaultError) as exc_info:
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    assert exc_info.value.status_code == 500
    assert exc_info.value.__cause__ is disk_error
    assert exc_info.value.message == "Storage failure in allocate_order: disk I/O error"
    assert db.list_allocations(ALLOCATION_DATE) == []


def test_rejected_allocation_still_records_weight_fallback(make_truck, make_product, make_order):
    truck_id = make_truck(capacity_kg=10)
    unweighed = make_product(capacity_kg=None, tare_weight_kg=None, variant_name=None)
    order_id = make_order(lines=[{"product_id": unweighed, "quantity": 1}])

    with pytest.raises(InvalidRequestError):
        allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    events = db.list_weight_events()
    assert [(event["order_id"], event["reason"]) for event in events] == [(order_id, "default")]


def test_status_lifecycle(make_truck, make_order):
    truck_id = make_truck()
    order_id = make_order(weight_kg=100)
    allocation = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    loaded = allocation_manager.update_allocation(allocation["id"], status="loaded", stop_sequence=3)
    assert loaded["status"] == "loaded"
    assert loaded["stop_sequence"] == 3

    delivered = allocation_manager.update_allocation(allocation["id"], status="DELIVERED")
    assert delivered["status"] == "delivered"

    with pytest.raises(InvalidRequestError) as exc_info:
        allocation_manager.update_allocation(allocation["id"], status="planned")
    assert exc_info.value.message == "Cannot change allocation status from delivered to planned"

    with pytest.raises(InvalidRequestError):
        allocation_manager.update_allocation(allocation["id"], status="lost")
    with pytest.raises(InvalidRequestError):
        allocation_manager.update_allocation(allocation["id"], stop_sequence=0)
    with pytest.raises(NotFoundError):
        allocation_manager.update_allocation(987654, status="loaded")


def test_cancelling_frees_capacity_and_clears_order(make_truck, make_order):
    truck_id = make_truck(capacity_kg=500)
    order_id = make_order(weight_kg=400)
    allocation = allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)

    allocation_manager.update_allocation(allocation["id"], status="cancelled")

    assert db.get_order(order_id)["assigned_truck_id"] is None
    assert db.sum_truck_allocations(truck_id, ALLOCATION_DATE)["allocated_weight_kg"] == 0.0
    assert allocation_manager.list_allocations(ALLOCATION_DATE) == []


def test_plan_allocations_places_heaviest_first(make_truck, make_order):
    truck_id = make_truck(capacity_kg=1000)
    light = make_order(weight_kg=300)
    heavy = make_order(weight_kg=800)
    medium = make_order(weight_kg=150)

    result = allocation_manager.plan_allocations([light, heavy, medium], ALLOCATION_DATE)

    assert [allocation["order_id"] for allocation in result["allocated"]] == [heavy, medium]
    assert result["unallocated"] == [
        {
            "order_id": light,
            "estimated_weight_kg": 300.0,
            "reason": "No suitable truck found for this order",
        }
    ]
    assert result["summary"] == {"total_orders": 3, "allocated_orders": 2}
    assert all(allocation["truck_id"] == truck_id for allocation in result["allocated"])


def test_concurrent_allocations_never_overallocate(make_truck, make_order):
    truck_id = make_truck(capacity_kg=1000)
    order_ids = [make_order(weight_kg=270) for _ in range(8)]
    successes = []
    rejections = []
    barrier = threading.Barrier(len(order_ids))

    def _worker(order_id):
        barrier.wait()
        try:
            successes.append(
                allocation_manager.allocate_order(order_id, ALLOCATION_DATE, truck_id=truck_id)
            )
        except InvalidRequestError as exc:
            rejections.append(exc)

    threads = [threading.Thread(target=_worker, args=(order_id,)) for order_id in order_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 3
    assert len(rejections) == 5
    capacity = db.sum_truck_allocations(truck_id, ALLOCATION_DATE)
    assert capacity["allocated_weight_kg"] == 810.0
    assert capacity["active_order_count"] == 3
