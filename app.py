import io
import logging
import os
from datetime import date

from flask import Flask, Response, jsonify, request

import db
from services import (
    allocation_manager,
    allocation_scorer,
    inventory_ledger,
    reconciliation,
    schedule,
    schedule_export,
    stock_loader,
    weight_calculator,
)
from services.capacity_tracker import get_truck_capacity
from services.errors import AllocationError, InvalidRequestError, NotFoundError
from services.settings import as_bool, is_local_dev_mode

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _optional_int(raw, field_name):
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidRequestError(
            f"{field_name} must be a whole number.",
            details={field_name: raw},
        ) from None


def _required_int(raw, field_name):
    value = _optional_int(raw, field_name)
    if value is None:
        raise InvalidRequestError(f"{field_name} is required.")
    return value


def _optional_float(raw, field_name):
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise InvalidRequestError(
            f"{field_name} must be a number.",
            details={field_name: raw},
        ) from None


def _request_user_id(payload=None):
    return (payload or {}).get("user_id") or request.headers.get("X-User-Id")


app = Flask(__name__)
if is_local_dev_mode():
    logger.info("Running in local development mode (db=%s)", db.DB_PATH)


@app.errorhandler(AllocationError)
def handle_allocation_error(exc):
    if exc.status_code >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.path, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


db.init_db()


# Weights and capacity


@app.route("/api/orders/<int:order_id>/weight")
def api_order_weight(order_id):
    if not db.get_order(order_id):
        raise NotFoundError("Order not found", details={"order_id": order_id})
    lines = weight_calculator.estimate_order_lines(order_id)
    return jsonify(
        {
            "order_id": order_id,
            "estimated_weight_kg": sum(line["estimated_weight_kg"] for line in lines),
            "lines": lines,
        }
    )


@app.route("/api/trucks/<int:truck_id>/capacity")
def api_truck_capacity(truck_id):
    allocation_date = allocation_manager.normalize_allocation_date(request.args.get("date"))
    return jsonify(get_truck_capacity(truck_id, allocation_date))


@app.route("/api/catalog/weight-events")
def api_weight_events():
    limit = _optional_int(request.args.get("limit"), "limit")
    return jsonify({"events": weight_calculator.list_weight_fallback_events(limit=limit)})


# Allocations


@app.route("/api/allocations/suggestions")
def api_allocation_suggestions():
    allocation_date = allocation_manager.normalize_allocation_date(request.args.get("date"))
    order_id = _optional_int(request.args.get("order_id"), "order_id")
    order_weight = _optional_float(request.args.get("order_weight"), "order_weight")
    if order_weight is None:
        if order_id is None:
            raise InvalidRequestError("order_id or order_weight is required.")
        if not db.get_order(order_id):
            raise NotFoundError("Order not found", details={"order_id": order_id})

    suggestions = allocation_scorer.rank_trucks(
        allocation_date,
        order_id=order_id,
        order_weight=order_weight,
    )
    recommended = allocation_scorer.best_truck(suggestions)
    return jsonify(
        {
            "allocation_date": allocation_date,
            "order_id": order_id,
            "suggestions": suggestions,
            "recommended_truck_id": recommended["truck_id"] if recommended else None,
        }
    )


@app.route("/api/allocations")
def api_list_allocations():
    truck_id = _optional_int(request.args.get("truck_id"), "truck_id")
    allocations = allocation_manager.list_allocations(request.args.get("date"), truck_id=truck_id)
    return jsonify({"allocations": allocations})


@app.route("/api/allocations", methods=["POST"])
def api_create_allocation():
    payload = request.get_json(silent=True) or {}
    allocation = allocation_manager.allocate_order(
        _required_int(payload.get("order_id"), "order_id"),
        payload.get("allocation_date"),
        truck_id=_optional_int(payload.get("truck_id"), "truck_id"),
        force=as_bool(payload.get("force")),
        user_id=_request_user_id(payload),
        stop_sequence=_optional_int(payload.get("stop_sequence"), "stop_sequence"),
    )
    return jsonify(allocation), 201


@app.route("/api/allocations/<int:allocation_id>", methods=["PATCH"])
def api_update_allocation(allocation_id):
    payload = request.get_json(silent=True) or {}
    allocation = allocation_manager.update_allocation(
        allocation_id,
        status=payload.get("status"),
        stop_sequence=payload.get("stop_sequence"),
    )
    return jsonify(allocation)


@app.route("/api/allocations/<int:allocation_id>", methods=["DELETE"])
def api_delete_allocation(allocation_id):
    allocation_manager.remove_allocation(allocation_id)
    return jsonify({"success": True, "allocation_id": allocation_id})


@app.route("/api/allocations/plan", methods=["POST"])
def api_plan_allocations():
    payload = request.get_json(silent=True) or {}
    order_ids = payload.get("order_ids") or []
    if not isinstance(order_ids, list) or not order_ids:
        return jsonify({"error": "No order ids provided."}), 400
    result = allocation_manager.plan_allocations(
        [_required_int(order_id, "order_id") for order_id in order_ids],
        payload.get("allocation_date"),
        user_id=_request_user_id(payload),
    )
    return jsonify(result)


@app.route("/api/allocations/reconcile", methods=["POST"])
def api_reconcile_allocations():
    payload = request.get_json(silent=True) or {}
    dry_run = as_bool(payload.get("dry_run", request.args.get("dry_run")))
    return jsonify(reconciliation.reconcile_order_assignments(dry_run=dry_run))


# Schedule


@app.route("/api/schedule")
def api_daily_schedule():
    schedule_date = allocation_manager.normalize_allocation_date(request.args.get("date"))
    trucks = schedule.get_daily_schedule(schedule_date)
    return jsonify(
        {
            "date": schedule_date,
            "trucks": trucks,
            "summary": schedule.summarize_fleet_utilization(trucks),
        }
    )


@app.route("/api/schedule/export.xlsx")
def api_schedule_export():
    schedule_date = allocation_manager.normalize_allocation_date(request.args.get("date"))
    workbook = schedule_export.build_schedule_workbook(
        schedule_date,
        schedule.get_daily_schedule(schedule_date),
    )
    output = io.BytesIO()
    workbook.save(output)
    output.seek(0)
    filename = f"truck_schedule_{schedule_date}.xlsx"

    return Response(
        output.getvalue(),
        mimetype=XLSX_MIMETYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# Truck inventory


@app.route("/api/trucks/<int:truck_id>/inventory")
def api_truck_inventory(truck_id):
    if not db.get_truck(truck_id):
        raise NotFoundError("Truck not found", details={"truck_id": truck_id})
    return jsonify(
        {
            "truck_id": truck_id,
            "inventory": inventory_ledger.get_truck_inventory(truck_id),
        }
    )


@app.route("/api/trucks/<int:truck_id>/inventory/<int:product_id>/availability")
def api_inventory_availability(truck_id, product_id):
    quantity = _optional_int(request.args.get("quantity"), "quantity") or 0
    return jsonify(inventory_ledger.check_availability(truck_id, product_id, quantity))


@app.route("/api/trucks/<int:truck_id>/inventory/movements")
def api_inventory_movements(truck_id):
    movements = inventory_ledger.list_stock_movements(
        truck_id,
        product_id=_optional_int(request.args.get("product_id"), "product_id"),
        limit=_optional_int(request.args.get("limit"), "limit"),
    )
    return jsonify({"truck_id": truck_id, "movements": movements})


@app.route("/api/trucks/<int:truck_id>/inventory/reserve", methods=["POST"])
def api_inventory_reserve(truck_id):
    payload = request.get_json(silent=True) or {}
    result = inventory_ledger.reserve(
        truck_id,
        _required_int(payload.get("product_id"), "product_id"),
        payload.get("quantity"),
        _optional_int(payload.get("order_id"), "order_id"),
        user_id=_request_user_id(payload),
    )
    return jsonify(result)


@app.route("/api/trucks/<int:truck_id>/inventory/release", methods=["POST"])
def api_inventory_release(truck_id):
    payload = request.get_json(silent=True) or {}
    result = inventory_ledger.release(
        truck_id,
        _required_int(payload.get("product_id"), "product_id"),
        payload.get("quantity"),
        _optional_int(payload.get("order_id"), "order_id"),
        user_id=_request_user_id(payload),
    )
    return jsonify(result)


@app.route("/api/trucks/inventory/load-sheet", methods=["POST"])
def api_inventory_load_sheet():
    file = request.files.get("file")
    if not file or not getattr(file, "filename", ""):
        return jsonify({"error": "Please choose a CSV or XLSX load sheet to upload."}), 400
    parsed = stock_loader.parse_load_sheet(file, file.filename)
    response = {
        "filename": file.filename,
        "total_rows": parsed["total_rows"],
        "rows": parsed["rows"],
        "errors": parsed["errors"],
        "applied": None,
    }
    if not as_bool(request.form.get("dry_run")):
        response["applied"] = stock_loader.apply_load_sheet(
            parsed,
            user_id=request.form.get("user_id") or request.headers.get("X-User-Id"),
        )
    return jsonify(response)


@app.route("/healthz")
def healthz():
    return jsonify({"status": "ok", "date": date.today().isoformat()})


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.run(debug=is_local_dev_mode())
