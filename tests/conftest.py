import os
import tempfile
from pathlib import Path

import pytest

# app.py initializes the database at import time; keep that off the real data dir.
os.environ.setdefault(
    "APP_DB_PATH",
    str(Path(tempfile.mkdtemp(prefix="fleet-allocation-tests-")) / "app.db"),
)

import db


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    for name in ("ALLOCATION_UNIQUE_PER_DATE", "ALLOCATION_HIGH_UTILIZATION_WARN_PCT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "app.db")
    db.init_db()
    return db.DB_PATH


@pytest.fixture
def make_truck():
    counter = {"value": 0}

    def _make_truck(capacity_kg=1000.0, capacity_cylinders=None, active=True, fleet_number=None):
        counter["value"] += 1
        return db.add_truck(
            {
                "fleet_number": fleet_number or f"T{counter['value']:03d}",
                "license_plate": f"PLATE-{counter['value']}",
                "capacity_kg": capacity_kg,
                "capacity_cylinders": capacity_cylinders,
                "active": active,
            }
        )

    return _make_truck


@pytest.fixture
def make_product():
    counter = {"value": 0}

    def _make_product(capacity_kg=13.0, tare_weight_kg=14.0, variant_name="full", sku=None):
        counter["value"] += 1
        return db.add_product(
            {
                "sku": sku or f"LPG-{counter['value']}",
                "name": f"LPG cylinder {counter['value']}",
                "variant_name": variant_name,
                "capacity_kg": capacity_kg,
                "tare_weight_kg": tare_weight_kg,
            }
        )

    return _make_product


@pytest.fixture
def make_order(make_product):
    def _make_order(weight_kg=None, lines=None, customer_name="Test Customer"):
        if lines is None:
            lines = []
            if weight_kg:
                # 1 kg-per-unit product so the order weighs exactly weight_kg.
                product_id = make_product(capacity_kg=13.0, tare_weight_kg=1.0, variant_name="empty")
                lines.append({"product_id": product_id, "quantity": int(weight_kg)})
        return db.add_order(
            {
                "customer_name": customer_name,
                "delivery_line1": "1 Depot Road",
                "delivery_city": "Springfield",
                "delivery_postal_code": "12345",
                "total_amount": 100.0,
            },
            lines,
        )

    return _make_order
