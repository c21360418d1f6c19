import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parent
DEFAULT_DB_PATH = str(ROOT / "data" / "db" / "app.db")
DB_PATH = Path(os.environ.get("APP_DB_PATH", DEFAULT_DB_PATH))

ALLOCATION_STATUSES = ("planned", "loaded", "delivered", "cancelled")

ORDER_ASSIGNMENT_COLUMNS = {
    "assigned_truck_id": "INTEGER",
    "truck_assigned_date": "TEXT",
}


def _utc_now():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def get_connection():
    timeout_sec_raw = os.environ.get("SQLITE_BUSY_TIMEOUT_SEC", "30")
    try:
        timeout_sec = max(float(timeout_sec_raw), 1.0)
    except (TypeError, ValueError):
        timeout_sec = 30.0
    timeout_ms = int(timeout_sec * 1000)

    db_path = Path(DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(db_path, timeout=timeout_sec)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode=WAL")
    connection.execute("PRAGMA synchronous=NORMAL")
    connection.execute("PRAGMA foreign_keys=ON")
    connection.execute(f"PRAGMA busy_timeout={timeout_ms}")
    return connection


@contextmanager
def use_connection(connection=None):
    if connection is not None:
        yield connection
        return
    inner_connection = get_connection()
    try:
        with inner_connection:
            yield inner_connection
    finally:
        inner_connection.close()


@contextmanager
def write_transaction():
    """Open a connection holding the database write lock until commit.

    BEGIN IMMEDIATE takes the reserved lock up front, so every read made inside
    the block sees state no other writer can change before the commit.
    """
    connection = get_connection()
    try:
        connection.execute("BEGIN IMMEDIATE")
        yield connection
        connection.commit()
    except BaseException:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def savepoint(connection, name):
    connection.execute(f"SAVEPOINT {name}")
    try:
        yield connection
    except BaseException:
        connection.execute(f"ROLLBACK TO SAVEPOINT {name}")
        connection.execute(f"RELEASE SAVEPOINT {name}")
        raise
    connection.execute(f"RELEASE SAVEPOINT {name}")


def _get_columns(connection, table_name):
    rows = connection.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {row["name"] for row in rows}


def _ensure_column(connection, table_name, column_name, ddl):
    if column_name not in _get_columns(connection, table_name):
        connection.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl}")


def _row_to_dict(row):
    return dict(row) if row else None


def init_db():
    with use_connection() as connection:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY,
                sku TEXT NOT NULL,
                name TEXT NOT NULL,
                variant_name TEXT,
                parent_product_id INTEGER,
                capacity_kg REAL,
                tare_weight_kg REAL,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_products_sku ON products (sku)"
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS trucks (
                id INTEGER PRIMARY KEY,
                fleet_number TEXT NOT NULL UNIQUE,
                license_plate TEXT,
                capacity_kg REAL,
                capacity_cylinders INTEGER,
                active INTEGER DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY,
                customer_name TEXT,
                delivery_line1 TEXT,
                delivery_city TEXT,
                delivery_postal_code TEXT,
                total_amount REAL,
                status TEXT DEFAULT 'confirmed',
                scheduled_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
            """
        )
        for column_name, ddl in ORDER_ASSIGNMENT_COLUMNS.items():
            _ensure_column(connection, "orders", column_name, ddl)
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS order_lines (
                id INTEGER PRIMARY KEY,
                order_id INTEGER NOT NULL,
                product_id INTEGER,
                quantity INTEGER NOT NULL,
                unit_price REAL,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_order_lines_order ON order_lines (order_id)"
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS truck_allocations (
                id INTEGER PRIMARY KEY,
                truck_id INTEGER NOT NULL,
                order_id INTEGER NOT NULL,
                allocation_date TEXT NOT NULL,
                estimated_weight_kg REAL NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'planned'
                    CHECK (status IN ('planned', 'loaded', 'delivered', 'cancelled')),
                stop_sequence INTEGER,
                allocated_by TEXT,
                allocated_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
            """
        )
        connection.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_truck_allocations_truck_date
            ON truck_allocations (truck_id, allocation_date)
            """
        )
        connection.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_truck_allocations_order_date
            ON truck_allocations (order_id, allocation_date)
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS truck_inventory (
                id INTEGER PRIMARY KEY,
                truck_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                qty_full INTEGER NOT NULL DEFAULT 0,
                qty_empty INTEGER NOT NULL DEFAULT 0,
                qty_reserved INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE (truck_id, product_id),
                CHECK (qty_empty >= 0),
                CHECK (qty_reserved >= 0 AND qty_reserved <= qty_full)
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS truck_stock_movements (
                id INTEGER PRIMARY KEY,
                truck_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                order_id INTEGER,
                movement_type TEXT NOT NULL,
                qty_full_change INTEGER NOT NULL DEFAULT 0,
                qty_empty_change INTEGER NOT NULL DEFAULT 0,
                qty_reserved_change INTEGER NOT NULL DEFAULT 0,
                user_id TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        connection.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_truck_stock_movements_truck
            ON truck_stock_movements (truck_id, product_id)
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS catalog_weight_events (
                id INTEGER PRIMARY KEY,
                order_id INTEGER,
                order_line_id INTEGER NOT NULL,
                product_id INTEGER,
                reason TEXT NOT NULL,
                unit_weight_kg REAL,
                occurrences INTEGER NOT NULL DEFAULT 1,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                UNIQUE (order_line_id, reason)
            )
            """
        )
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS allocation_sync_issues (
                id INTEGER PRIMARY KEY,
                allocation_id INTEGER,
                order_id INTEGER NOT NULL,
                operation TEXT NOT NULL,
                error TEXT,
                status TEXT NOT NULL DEFAULT 'OPEN',
                created_at TEXT NOT NULL,
                resolved_at TEXT
            )
            """
        )
        connection.commit()


# Reference data


def add_product(product, connection=None):
    with use_connection(connection) as active:
        cursor = active.execute(
            """
            INSERT INTO products (
                sku, name, variant_name, parent_product_id,
                capacity_kg, tare_weight_kg, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                product.get("sku"),
                product.get("name") or product.get("sku"),
                product.get("variant_name"),
                product.get("parent_product_id"),
                product.get("capacity_kg"),
                product.get("tare_weight_kg"),
                _utc_now(),
            ),
        )
        return cursor.lastrowid


def get_product(product_id, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            "SELECT * FROM products WHERE id = ?",
            (product_id,),
        ).fetchone()
        return _row_to_dict(row)


def get_product_by_sku(sku, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            "SELECT * FROM products WHERE UPPER(sku) = UPPER(?) ORDER BY id ASC LIMIT 1",
            ((sku or "").strip(),),
        ).fetchone()
        return _row_to_dict(row)


def add_truck(truck, connection=None):
    with use_connection(connection) as active:
        cursor = active.execute(
            """
            INSERT INTO trucks (
                fleet_number, license_plate, capacity_kg,
                capacity_cylinders, active, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                truck.get("fleet_number"),
                truck.get("license_plate"),
                truck.get("capacity_kg"),
                truck.get("capacity_cylinders"),
                0 if truck.get("active") is False else 1,
                _utc_now(),
            ),
        )
        return cursor.lastrowid


def get_truck(truck_id, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            "SELECT * FROM trucks WHERE id = ?",
            (truck_id,),
        ).fetchone()
        return _row_to_dict(row)


def get_truck_by_fleet_number(fleet_number, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            "SELECT * FROM trucks WHERE UPPER(fleet_number) = UPPER(?)",
            ((fleet_number or "").strip(),),
        ).fetchone()
        return _row_to_dict(row)


def list_active_trucks(connection=None):
    with use_connection(connection) as active:
        rows = active.execute(
            """
            SELECT *
            FROM trucks
            WHERE active = 1
            ORDER BY fleet_number ASC, id ASC
            """
        ).fetchall()
        return [dict(row) for row in rows]


# Orders


def add_order(order, lines=None, connection=None):
    created_at = _utc_now()
    with use_connection(connection) as active:
        cursor = active.execute(
            """
            INSERT INTO orders (
                customer_name, delivery_line1, delivery_city,
                delivery_postal_code, total_amount, status,
                scheduled_date, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.get("customer_name"),
                order.get("delivery_line1"),
                order.get("delivery_city"),
                order.get("delivery_postal_code"),
                order.get("total_amount"),
                order.get("status") or "confirmed",
                order.get("scheduled_date"),
                created_at,
                created_at,
            ),
        )
        order_id = cursor.lastrowid
        for line in lines or []:
            active.execute(
                """
                INSERT INTO order_lines (order_id, product_id, quantity, unit_price, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    order_id,
                    line.get("product_id"),
                    int(line.get("quantity") or 0),
                    line.get("unit_price"),
                    created_at,
                ),
            )
        return order_id


def get_order(order_id, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            "SELECT * FROM orders WHERE id = ?",
            (order_id,),
        ).fetchone()
        return _row_to_dict(row)


def list_order_lines_with_products(order_id, connection=None):
    with use_connection(connection) as active:
        rows = active.execute(
            """
            SELECT
                ol.id AS order_line_id,
                ol.order_id,
                ol.product_id,
                ol.quantity,
                p.id AS resolved_product_id,
                p.sku,
                p.name AS product_name,
                p.variant_name,
                p.parent_product_id,
                p.capacity_kg,
                p.tare_weight_kg
            FROM order_lines ol
            LEFT JOIN products p ON p.id = ol.product_id
            WHERE ol.order_id = ?
            ORDER BY ol.id ASC
            """,
            (order_id,),
        ).fetchall()
        return [dict(row) for row in rows]


def set_order_assignment(connection, order_id, truck_id, assigned_date):
    cursor = connection.execute(
        """
        UPDATE orders
        SET assigned_truck_id = ?,
            truck_assigned_date = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (truck_id, assigned_date, _utc_now(), order_id),
    )
    return cursor.rowcount


def find_latest_live_allocation(order_id, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            """
            SELECT *
            FROM truck_allocations
            WHERE order_id = ?
              AND status != 'cancelled'
            ORDER BY id DESC
            LIMIT 1
            """,
            (order_id,),
        ).fetchone()
        return _row_to_dict(row)


def list_assignment_drift(connection=None):
    with use_connection(connection) as active:
        rows = active.execute(
            """
            SELECT
                o.id AS order_id,
                o.assigned_truck_id,
                o.truck_assigned_date,
                a.id AS allocation_id,
                a.truck_id AS allocation_truck_id,
                a.allocation_date
            FROM orders o
            LEFT JOIN truck_allocations a
              ON a.id = (
                  SELECT ta.id
                  FROM truck_allocations ta
                  WHERE ta.order_id = o.id
                    AND ta.status != 'cancelled'
                  ORDER BY ta.id DESC
                  LIMIT 1
              )
            WHERE NOT (
                o.assigned_truck_id IS a.truck_id
                AND o.truck_assigned_date IS a.allocation_date
            )
            ORDER BY o.id ASC
            """
        ).fetchall()
        return [dict(row) for row in rows]


# Allocations


def insert_allocation(connection, allocation):
    created_at = _utc_now()
    cursor = connection.execute(
        """
        INSERT INTO truck_allocations (
            truck_id, order_id, allocation_date, estimated_weight_kg,
            status, stop_sequence, allocated_by, allocated_at,
            created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            allocation.get("truck_id"),
            allocation.get("order_id"),
            allocation.get("allocation_date"),
            allocation.get("estimated_weight_kg") or 0,
            allocation.get("status") or "planned",
            allocation.get("stop_sequence"),
            allocation.get("allocated_by"),
            created_at,
            created_at,
            created_at,
        ),
    )
    return cursor.lastrowid


def get_allocation(allocation_id, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            "SELECT * FROM truck_allocations WHERE id = ?",
            (allocation_id,),
        ).fetchone()
        return _row_to_dict(row)


def update_allocation_fields(connection, allocation_id, fields):
    allowed = {"status", "stop_sequence"}
    updates = {key: value for key, value in (fields or {}).items() if key in allowed}
    if not updates:
        return 0
    assignments = ", ".join(f"{key} = ?" for key in updates)
    params = list(updates.values()) + [_utc_now(), allocation_id]
    cursor = connection.execute(
        f"UPDATE truck_allocations SET {assignments}, updated_at = ? WHERE id = ?",
        params,
    )
    return cursor.rowcount


def delete_allocation(connection, allocation_id):
    cursor = connection.execute(
        "DELETE FROM truck_allocations WHERE id = ?",
        (allocation_id,),
    )
    return cursor.rowcount


def sum_truck_allocations(truck_id, allocation_date, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            """
            SELECT
                COALESCE(SUM(estimated_weight_kg), 0) AS allocated_weight_kg,
                COUNT(*) AS active_order_count
            FROM truck_allocations
            WHERE truck_id = ?
              AND allocation_date = ?
              AND status != 'cancelled'
            """,
            (truck_id, allocation_date),
        ).fetchone()
        return {
            "allocated_weight_kg": float(row["allocated_weight_kg"] or 0),
            "active_order_count": int(row["active_order_count"] or 0),
        }


def find_active_allocation(order_id, allocation_date, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            """
            SELECT *
            FROM truck_allocations
            WHERE order_id = ?
              AND allocation_date = ?
              AND status != 'cancelled'
            ORDER BY id ASC
            LIMIT 1
            """,
            (order_id, allocation_date),
        ).fetchone()
        return _row_to_dict(row)


def list_allocations(allocation_date, truck_id=None, connection=None):
    where_clauses = ["allocation_date = ?", "status != 'cancelled'"]
    params = [allocation_date]
    if truck_id is not None:
        where_clauses.append("truck_id = ?")
        params.append(truck_id)
    where_clause = " AND ".join(where_clauses)
    with use_connection(connection) as active:
        rows = active.execute(
            f"""
            SELECT *
            FROM truck_allocations
            WHERE {where_clause}
            ORDER BY truck_id ASC, stop_sequence IS NULL, stop_sequence ASC, id ASC
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


def list_truck_allocations_with_orders(truck_id, allocation_date, connection=None):
    with use_connection(connection) as active:
        rows = active.execute(
            """
            SELECT
                a.*,
                o.customer_name,
                o.delivery_line1,
                o.delivery_city,
                o.delivery_postal_code,
                o.total_amount,
                o.status AS order_status,
                o.scheduled_date
            FROM truck_allocations a
            LEFT JOIN orders o ON o.id = a.order_id
            WHERE a.truck_id = ?
              AND a.allocation_date = ?
              AND a.status != 'cancelled'
            ORDER BY a.stop_sequence IS NULL, a.stop_sequence ASC, a.id ASC
            """,
            (truck_id, allocation_date),
        ).fetchall()
        return [dict(row) for row in rows]


# Truck inventory


def get_truck_inventory_row(truck_id, product_id, connection=None):
    with use_connection(connection) as active:
        row = active.execute(
            """
            SELECT *
            FROM truck_inventory
            WHERE truck_id = ? AND product_id = ?
            """,
            (truck_id, product_id),
        ).fetchone()
        return _row_to_dict(row)


def ensure_truck_inventory_row(connection, truck_id, product_id):
    now = _utc_now()
    cursor = connection.execute(
        """
        INSERT OR IGNORE INTO truck_inventory (
            truck_id, product_id, qty_full, qty_empty, qty_reserved,
            created_at, updated_at
        )
        VALUES (?, ?, 0, 0, 0, ?, ?)
        """,
        (truck_id, product_id, now, now),
    )
    return cursor.rowcount == 1


def try_reserve_truck_stock(connection, truck_id, product_id, quantity):
    cursor = connection.execute(
        """
        UPDATE truck_inventory
        SET qty_reserved = qty_reserved + ?,
            updated_at = ?
        WHERE truck_id = ?
          AND product_id = ?
          AND qty_full - qty_reserved >= ?
        """,
        (quantity, _utc_now(), truck_id, product_id, quantity),
    )
    return cursor.rowcount == 1


def try_release_truck_stock(connection, truck_id, product_id, quantity):
    cursor = connection.execute(
        """
        UPDATE truck_inventory
        SET qty_reserved = qty_reserved - ?,
            updated_at = ?
        WHERE truck_id = ?
          AND product_id = ?
          AND qty_reserved >= ?
        """,
        (quantity, _utc_now(), truck_id, product_id, quantity),
    )
    return cursor.rowcount == 1


def add_truck_stock(connection, truck_id, product_id, qty_full, qty_empty):
    now = _utc_now()
    connection.execute(
        """
        INSERT INTO truck_inventory (
            truck_id, product_id, qty_full, qty_empty, qty_reserved,
            created_at, updated_at
        )
        VALUES (?, ?, ?, ?, 0, ?, ?)
        ON CONFLICT (truck_id, product_id) DO UPDATE SET
            qty_full = qty_full + excluded.qty_full,
            qty_empty = qty_empty + excluded.qty_empty,
            updated_at = excluded.updated_at
        """,
        (truck_id, product_id, qty_full, qty_empty, now, now),
    )


def try_remove_truck_stock(connection, truck_id, product_id, qty_full, qty_empty):
    cursor = connection.execute(
        """
        UPDATE truck_inventory
        SET qty_full = qty_full - ?,
            qty_empty = qty_empty - ?,
            updated_at = ?
        WHERE truck_id = ?
          AND product_id = ?
          AND qty_full - ? >= qty_reserved
          AND qty_empty - ? >= 0
        """,
        (qty_full, qty_empty, _utc_now(), truck_id, product_id, qty_full, qty_empty),
    )
    return cursor.rowcount == 1


def list_truck_inventory(truck_id, connection=None):
    with use_connection(connection) as active:
        rows = active.execute(
            """
            SELECT
                ti.*,
                p.name AS product_name,
                p.sku AS product_sku,
                p.variant_name AS product_variant_name,
                p.capacity_kg,
                p.tare_weight_kg
            FROM truck_inventory ti
            LEFT JOIN products p ON p.id = ti.product_id
            WHERE ti.truck_id = ?
            ORDER BY p.sku ASC, ti.product_id ASC
            """,
            (truck_id,),
        ).fetchall()
        return [dict(row) for row in rows]


def add_stock_movement(connection, movement):
    cursor = connection.execute(
        """
        INSERT INTO truck_stock_movements (
            truck_id, product_id, order_id, movement_type,
            qty_full_change, qty_empty_change, qty_reserved_change,
            user_id, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            movement.get("truck_id"),
            movement.get("product_id"),
            movement.get("order_id"),
            movement.get("movement_type"),
            movement.get("qty_full_change") or 0,
            movement.get("qty_empty_change") or 0,
            movement.get("qty_reserved_change") or 0,
            movement.get("user_id"),
            _utc_now(),
        ),
    )
    return cursor.lastrowid


def list_stock_movements(truck_id, product_id=None, limit=None, connection=None):
    where_clauses = ["truck_id = ?"]
    params = [truck_id]
    if product_id is not None:
        where_clauses.append("product_id = ?")
        params.append(product_id)
    limit_clause = ""
    if limit:
        limit_clause = "LIMIT ?"
        params.append(int(limit))
    with use_connection(connection) as active:
        rows = active.execute(
            f"""
            SELECT *
            FROM truck_stock_movements
            WHERE {' AND '.join(where_clauses)}
            ORDER BY id DESC
            {limit_clause}
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


# Catalog weight events


def record_weight_event(connection, event):
    now = _utc_now()
    connection.execute(
        """
        INSERT INTO catalog_weight_events (
            order_id, order_line_id, product_id, reason,
            unit_weight_kg, occurrences, first_seen_at, last_seen_at
        )
        VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        ON CONFLICT (order_line_id, reason) DO UPDATE SET
            occurrences = occurrences + 1,
            unit_weight_kg = excluded.unit_weight_kg,
            last_seen_at = excluded.last_seen_at
        """,
        (
            event.get("order_id"),
            event.get("order_line_id"),
            event.get("product_id"),
            event.get("reason"),
            event.get("unit_weight_kg"),
            now,
            now,
        ),
    )


def list_weight_events(limit=None, connection=None):
    params = []
    limit_clause = ""
    if limit:
        limit_clause = "LIMIT ?"
        params.append(int(limit))
    with use_connection(connection) as active:
        rows = active.execute(
            f"""
            SELECT e.*, p.sku AS product_sku, p.name AS product_name
            FROM catalog_weight_events e
            LEFT JOIN products p ON p.id = e.product_id
            ORDER BY e.last_seen_at DESC, e.id DESC
            {limit_clause}
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]


# Allocation sync issues


def add_sync_issue(connection, issue):
    cursor = connection.execute(
        """
        INSERT INTO allocation_sync_issues (
            allocation_id, order_id, operation, error, status, created_at
        )
        VALUES (?, ?, ?, ?, 'OPEN', ?)
        """,
        (
            issue.get("allocation_id"),
            issue.get("order_id"),
            issue.get("operation"),
            issue.get("error"),
            _utc_now(),
        ),
    )
    return cursor.lastrowid


def list_sync_issues(status="OPEN", connection=None):
    with use_connection(connection) as active:
        if status:
            rows = active.execute(
                "SELECT * FROM allocation_sync_issues WHERE status = ? ORDER BY id ASC",
                (status,),
            ).fetchall()
        else:
            rows = active.execute(
                "SELECT * FROM allocation_sync_issues ORDER BY id ASC"
            ).fetchall()
        return [dict(row) for row in rows]


def resolve_sync_issues(connection, order_ids):
    cleaned_ids = [int(value) for value in order_ids or []]
    if not cleaned_ids:
        return 0
    placeholders = ", ".join("?" for _ in cleaned_ids)
    cursor = connection.execute(
        f"""
        UPDATE allocation_sync_issues
        SET status = 'RESOLVED',
            resolved_at = ?
        WHERE status = 'OPEN'
          AND order_id IN ({placeholders})
        """,
        [_utc_now()] + cleaned_ids,
    )
    return cursor.rowcount
