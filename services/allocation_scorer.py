import db
from services import weight_calculator
from services.capacity_tracker import get_truck_capacity
from services.errors import translate_storage_errors

SUFFICIENT_CAPACITY_SCORE = 50
INSUFFICIENT_CAPACITY_SCORE = -10
OVERALLOCATED_PENALTY = -20
USABLE_SCORE_THRESHOLD = 0

def _utilization_bonus(utilization_after):
    if 60 <= utilization_after <= 85:
        return 30, "Optimal capacity utilization"
    if 85 < utilization_after <= 95:
        return 20, "High capacity utilization"
    if utilization_after < 60:
        return 10, "Low capacity utilization"
    # Above 95% earns no bonus so near-full trucks keep some headroom.
    return 0, None


def _order_count_bonus(active_order_count):
    if active_order_count <= 3:
        return 15, "Few existing orders"
    if active_order_count <= 6:
        return 10, "Moderate order count"
    return 5, "Many existing orders"


def score_truck(capacity, order_weight):
    """Score one truck's capacity snapshot for an order of ``order_weight`` kg.

    Returns ``(score, reasons, utilization_after)``.
    """
    reasons = []
    total_capacity_kg = capacity["total_capacity_kg"]
    allocated_weight_kg = capacity["allocated_weight_kg"]
    utilization_after = (
        ((allocated_weight_kg + order_weight) / total_capacity_kg) * 100
        if total_capacity_kg > 0
        else 0.0
    )

    if capacity["available_capacity_kg"] >= order_weight:
        score = SUFFICIENT_CAPACITY_SCORE
        reasons.append("Has sufficient capacity")

        bonus, reason = _utilization_bonus(utilization_after)
        if reason:
            score += bonus
            reasons.append(reason)

        bonus, reason = _order_count_bonus(capacity["active_order_count"])
        score += bonus
        reasons.append(reason)
    else:
        score = INSUFFICIENT_CAPACITY_SCORE
        reasons.append("Insufficient capacity")
        if capacity["is_overallocated"]:
            score += OVERALLOCATED_PENALTY
            reasons.append("Already overallocated")

    return score, reasons, round(utilization_after, 2)


@translate_storage_errors
def rank_trucks(allocation_date, order_id=None, order_weight=None, connection=None):
    if order_weight is None:
        order_weight = weight_calculator.calculate_order_weight(order_id, connection=connection)
    order_weight = float(order_weight)

    with db.use_connection(connection) as active:
        suggestions = []
        for truck in db.list_active_trucks(connection=active):
            capacity = get_truck_capacity(
                truck["id"],
                allocation_date,
                connection=active,
                truck=truck,
            )
            score, reasons, utilization_after = score_truck(capacity, order_weight)
            suggestions.append(
                {
                    "truck_id": truck["id"],
                    "fleet_number": truck.get("fleet_number"),
                    "capacity_info": capacity,
                    "order_weight_kg": order_weight,
                    "utilization_after_percent": utilization_after,
                    "score": score,
                    "reasons": reasons,
                }
            )

    # sorted() is stable, so equal scores keep fleet_number order.
    return sorted(suggestions, key=lambda suggestion: -suggestion["score"])


def best_truck(suggestions):
    return next(
        (
            suggestion
            for suggestion in suggestions or []
            if suggestion["score"] > USABLE_SCORE_THRESHOLD
        ),
        None,
    )
