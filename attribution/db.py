"""Attribution Source Database Operations.

Tables the resolver joins against to find a transaction's owner:
- shipments: shipment_id -> client_id (plus service tier and weight)
- orders: order_id / order_number -> client_id
- receiving_orders: receiving_order_id -> client_id
- returns: return_id -> client_id
- inventory_items: inventory_id -> client_id

All lookups are batch lookups; callers go through
attribution.repository.AttributionRepository, which caches them per job.
"""

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

from core.storage.database import chunked, get_connection, placeholders

# table -> (key column, extra columns)
SOURCE_TABLES = {
    "shipments": ("shipment_id", ("order_id", "service_tier", "weight_oz")),
    "orders": ("order_id", ("order_number",)),
    "receiving_orders": ("receiving_order_id", ()),
    "returns": ("return_id", ("original_shipment_id",)),
    "inventory_items": ("inventory_id", ("sku",)),
}


def init_attribution_db(db_path: Optional[Path] = None) -> None:
    """Initialize attribution source tables."""
    conn = get_connection(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS shipments (
                shipment_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                order_id TEXT,
                service_tier TEXT,
                weight_oz TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                order_number TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_number ON orders(order_number)")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS receiving_orders (
                receiving_order_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS returns (
                return_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                original_shipment_id TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS inventory_items (
                inventory_id TEXT PRIMARY KEY,
                client_id TEXT NOT NULL,
                sku TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _bindable(value):
    if value is None or isinstance(value, (str, int, float)):
        return value
    return str(value)


def upsert_source_rows(table: str, rows: Sequence[dict], db_path: Optional[Path] = None) -> int:
    """Upsert attribution source rows.

    Args:
        table: One of SOURCE_TABLES
        rows: Dicts with the key column, client_id and any extra columns
    """
    if table not in SOURCE_TABLES:
        raise ValueError(f"Unknown attribution source table: {table}")
    if not rows:
        return 0
    key, extras = SOURCE_TABLES[table]
    columns = [key, "client_id", *extras, "updated_at"]
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns[1:])
    now = datetime.utcnow().isoformat()
    conn = get_connection(db_path)
    try:
        conn.executemany(
            f"""
            INSERT INTO {table} ({", ".join(columns)}) VALUES ({placeholders(len(columns))})
            ON CONFLICT({key}) DO UPDATE SET {updates}
            """,
            [(str(r[key]), r["client_id"], *(_bindable(r.get(c)) for c in extras), now) for r in rows],
        )
        conn.commit()
        return len(rows)
    finally:
        conn.close()


def lookup_clients(
    table: str,
    ids: Iterable[str],
    key_column: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> Dict[str, str]:
    """Batch lookup of client ids by key. Missing keys are absent from the result."""
    if table not in SOURCE_TABLES:
        raise ValueError(f"Unknown attribution source table: {table}")
    key_column = key_column or SOURCE_TABLES[table][0]
    result: Dict[str, str] = {}
    conn = get_connection(db_path)
    try:
        for batch in chunked(sorted({str(i) for i in ids})):
            rows = conn.execute(
                f"SELECT {key_column} AS k, client_id FROM {table} "
                f"WHERE {key_column} IN ({placeholders(len(batch))})",
                batch,
            ).fetchall()
            for row in rows:
                result[row["k"]] = row["client_id"]
    finally:
        conn.close()
    return result


def lookup_shipment_details(ids: Iterable[str], db_path: Optional[Path] = None) -> Dict[str, dict]:
    """Service tier and weight per shipment, used to enrich markup matching."""
    result: Dict[str, dict] = {}
    conn = get_connection(db_path)
    try:
        for batch in chunked(sorted({str(i) for i in ids})):
            rows = conn.execute(
                f"SELECT shipment_id, client_id, service_tier, weight_oz FROM shipments "
                f"WHERE shipment_id IN ({placeholders(len(batch))})",
                batch,
            ).fetchall()
            for row in rows:
                result[row["shipment_id"]] = dict(row)
    finally:
        conn.close()
    return result
