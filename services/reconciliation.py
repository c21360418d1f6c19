import logging

import db
from services.errors import translate_storage_errors

logger = logging.getLogger(__name__)


def _expected_assignment(row):
    if row.get("allocation_id") is None:
        return None, None
    return row.get("allocation_truck_id"), row.get("allocation_date")


@translate_storage_errors
def find_assignment_drift(connection=None):
    """List orders whose assignment fields disagree with their allocations.

    The most recently made non-cancelled allocation of an order is its
    binding; an order with no such allocation should carry no assignment.
    """
    drift = []
    for row in db.list_assignment_drift(connection=connection):
        expected_truck_id, expected_date = _expected_assignment(row)
        drift.append(
            {
                "order_id": row["order_id"],
                "allocation_id": row.get("allocation_id"),
                "current_truck_id": row.get("assigned_truck_id"),
                "current_assigned_date": row.get("truck_assigned_date"),
                "expected_truck_id": expected_truck_id,
                "expected_assigned_date": expected_date,
            }
        )
    return drift


@translate_storage_errors
def reconcile_order_assignments(dry_run=False):
    with db.write_transaction() as connection:
        drift = find_assignment_drift(connection=connection)
        if dry_run:
            return {"dry_run": True, "drift": drift, "repaired": 0, "resolved_issues": 0}

        for entry in drift:
            db.set_order_assignment(
                connection,
                entry["order_id"],
                entry["expected_truck_id"],
                entry["expected_assigned_date"],
            )
        # Orders with open issues but no remaining drift were repaired elsewhere.
        open_order_ids = {issue["order_id"] for issue in db.list_sync_issues(connection=connection)}
        resolved = db.resolve_sync_issues(
            connection,
            sorted(open_order_ids | {entry["order_id"] for entry in drift}),
        )

    if drift or resolved:
        logger.warning(
            "Reconciled order assignments: repaired=%s resolved_issues=%s",
            len(drift),
            resolved,
        )
    return {"dry_run": False, "drift": drift, "repaired": len(drift), "resolved_issues": resolved}
