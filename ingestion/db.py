"""Transaction Store Database Operations.

This module handles all database operations for platform billing data:
- Schema initialization (transactions, external_invoices)
- Idempotent upserts keyed by the platform's ids
- One-way attribution and invoicing markers
- Paginated reads for attribution, invoicing and reconciliation

Amounts are stored as TEXT so Decimal values round-trip exactly.
Datetimes are stored as naive UTC ISO strings so range filters compare
lexically.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set

from core.errors import AttributionConflictError
from core.models.canonical import ExternalInvoice, LineItem, ReferenceKind, Transaction
from core.storage.database import chunked, get_connection, iter_rows, placeholders


def init_transaction_db(db_path: Optional[Path] = None) -> None:
    """Initialize transaction store tables.

    Creates:
    - transactions: one row per platform transaction id
    - external_invoices: the platform's own invoice records
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                transaction_id TEXT PRIMARY KEY,
                reference_id TEXT NOT NULL,
                reference_kind TEXT NOT NULL,
                platform_reference_type TEXT,
                transaction_type TEXT NOT NULL,
                invoice_type TEXT,
                fee_type TEXT NOT NULL,
                amount TEXT NOT NULL,
                surcharge TEXT NOT NULL DEFAULT '0',
                insurance TEXT NOT NULL DEFAULT '0',
                tax TEXT NOT NULL DEFAULT '0',
                charge_date TEXT NOT NULL,
                external_invoice_id TEXT,
                service_tier TEXT,
                weight_oz TEXT,
                additional_details TEXT DEFAULT '{}',

                -- Attribution (set once)
                client_id TEXT,
                attribution_method TEXT,
                attribution_note TEXT,
                attributed_at TEXT,

                -- Invoicing (one-way)
                internal_invoice_id TEXT,
                invoiced_at TEXT,
                billed_markup TEXT,
                billed_amount TEXT,
                markup_percentage TEXT,
                markup_rule_id INTEGER,

                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_client_date ON transactions(client_id, charge_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_external_invoice ON transactions(external_invoice_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_charge_date ON transactions(charge_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_internal_invoice ON transactions(internal_invoice_id)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS external_invoices (
                invoice_id TEXT PRIMARY KEY,
                invoice_type TEXT,
                invoice_date TEXT,
                amount TEXT NOT NULL,
                currency_code TEXT NOT NULL DEFAULT 'USD',
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_ext_inv_date ON external_invoices(invoice_date)")

        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Conversions
# =============================================================================

def dt_to_db(value: Optional[datetime]) -> Optional[str]:
    """Naive-UTC ISO string for storage."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat()
    return datetime(value.year, value.month, value.day).isoformat()


def period_bounds(period_start: date, period_end: date) -> tuple:
    """[start, end] inclusive dates as a half-open string range."""
    return (
        datetime(period_start.year, period_start.month, period_start.day).isoformat(),
        (datetime(period_end.year, period_end.month, period_end.day) + timedelta(days=1)).isoformat(),
    )


def _dec(value) -> Optional[str]:
    return None if value is None else str(value)


def _now() -> str:
    return datetime.utcnow().isoformat()


def row_to_transaction(row: sqlite3.Row) -> Transaction:
    """Convert a transactions row to a Transaction."""
    return Transaction(
        transaction_id=row["transaction_id"],
        reference_id=row["reference_id"],
        reference_kind=ReferenceKind(row["reference_kind"]),
        platform_reference_type=row["platform_reference_type"],
        transaction_type=row["transaction_type"],
        invoice_type=row["invoice_type"],
        fee_type=row["fee_type"],
        amount=Decimal(row["amount"]),
        surcharge=Decimal(row["surcharge"]),
        insurance=Decimal(row["insurance"]),
        tax=Decimal(row["tax"]),
        charge_date=datetime.fromisoformat(row["charge_date"]),
        external_invoice_id=row["external_invoice_id"],
        client_id=row["client_id"],
        service_tier=row["service_tier"],
        weight_oz=Decimal(row["weight_oz"]) if row["weight_oz"] is not None else None,
        additional_details=json.loads(row["additional_details"] or "{}"),
        internal_invoice_id=row["internal_invoice_id"],
    )


# =============================================================================
# Transactions: writes
# =============================================================================

@dataclass
class UpsertStats:
    inserted: int = 0
    updated: int = 0
    inserted_ids: List[str] = field(default_factory=list)


def get_existing_ids(transaction_ids: Iterable[str], db_path: Optional[Path] = None) -> Set[str]:
    """Return the subset of ids already stored."""
    existing: Set[str] = set()
    conn = get_connection(db_path)
    try:
        for batch in chunked(transaction_ids):
            rows = conn.execute(
                f"SELECT transaction_id FROM transactions WHERE transaction_id IN ({placeholders(len(batch))})",
                batch,
            ).fetchall()
            existing.update(r["transaction_id"] for r in rows)
    finally:
        conn.close()
    return existing


def upsert_transactions(transactions: Sequence[Transaction], db_path: Optional[Path] = None) -> UpsertStats:
    """Insert or refresh transactions keyed by transaction id.

    Platform-owned fields are refreshed. ``client_id`` is only filled when
    the stored row has none, and invoicing markers are never touched, so
    re-running a sync cannot undo attribution or invoicing.
    """
    stats = UpsertStats()
    if not transactions:
        return stats

    existing = get_existing_ids([t.transaction_id for t in transactions], db_path)
    now = _now()
    conn = get_connection(db_path)
    try:
        for tx in transactions:
            conn.execute(
                """
                INSERT INTO transactions (
                    transaction_id, reference_id, reference_kind, platform_reference_type,
                    transaction_type, invoice_type, fee_type, amount, surcharge, insurance, tax,
                    charge_date, external_invoice_id, service_tier, weight_oz, additional_details,
                    client_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(transaction_id) DO UPDATE SET
                    reference_id = excluded.reference_id,
                    reference_kind = excluded.reference_kind,
                    platform_reference_type = excluded.platform_reference_type,
                    transaction_type = excluded.transaction_type,
                    invoice_type = excluded.invoice_type,
                    fee_type = excluded.fee_type,
                    amount = excluded.amount,
                    surcharge = excluded.surcharge,
                    insurance = excluded.insurance,
                    tax = excluded.tax,
                    charge_date = excluded.charge_date,
                    external_invoice_id = COALESCE(excluded.external_invoice_id, transactions.external_invoice_id),
                    service_tier = excluded.service_tier,
                    weight_oz = excluded.weight_oz,
                    additional_details = excluded.additional_details,
                    client_id = COALESCE(transactions.client_id, excluded.client_id),
                    updated_at = excluded.updated_at
                """,
                (
                    tx.transaction_id, tx.reference_id, tx.reference_kind.value, tx.platform_reference_type,
                    tx.transaction_type, tx.invoice_type, tx.fee_type, _dec(tx.amount), _dec(tx.surcharge),
                    _dec(tx.insurance), _dec(tx.tax), dt_to_db(tx.charge_date), tx.external_invoice_id,
                    tx.service_tier, _dec(tx.weight_oz), json.dumps(tx.additional_details, default=str),
                    tx.client_id, now, now,
                ),
            )
            if tx.transaction_id in existing:
                stats.updated += 1
            else:
                stats.inserted += 1
                stats.inserted_ids.append(tx.transaction_id)
        conn.commit()
    finally:
        conn.close()
    return stats


def record_attributions(
    attributions: Sequence[tuple],
    db_path: Optional[Path] = None,
) -> int:
    """Set client_id on unattributed rows.

    Args:
        attributions: (transaction_id, client_id, method, note) tuples

    Returns:
        Number of rows newly attributed

    Raises:
        AttributionConflictError: A row is already attributed to another client.
            Nothing from the batch is written.
    """
    if not attributions:
        return 0
    now = _now()
    conn = get_connection(db_path)
    try:
        updated = 0
        for transaction_id, client_id, method, note in attributions:
            cur = conn.execute(
                """
                UPDATE transactions
                SET client_id = ?, attribution_method = ?, attribution_note = ?,
                    attributed_at = ?, updated_at = ?
                WHERE transaction_id = ? AND client_id IS NULL
                """,
                (client_id, method, note, now, now, transaction_id),
            )
            if cur.rowcount:
                updated += 1
                continue
            row = conn.execute(
                "SELECT client_id FROM transactions WHERE transaction_id = ?", (transaction_id,)
            ).fetchone()
            if row is not None and row["client_id"] != client_id:
                conn.rollback()
                raise AttributionConflictError(transaction_id, row["client_id"], client_id)
        conn.commit()
        return updated
    finally:
        conn.close()


def record_attribution_notes(notes: Sequence[tuple], db_path: Optional[Path] = None) -> None:
    """Record why unattributed rows stayed unattributed: (transaction_id, method, note)."""
    if not notes:
        return
    conn = get_connection(db_path)
    try:
        conn.executemany(
            """
            UPDATE transactions SET attribution_method = ?, attribution_note = ?
            WHERE transaction_id = ? AND client_id IS NULL
            """,
            [(method, note, tid) for tid, method, note in notes],
        )
        conn.commit()
    finally:
        conn.close()


def mark_transactions_invoiced(
    conn: sqlite3.Connection,
    invoice_number: str,
    line_items: Sequence[LineItem],
) -> int:
    """Stamp invoiced transactions with our invoice number and billed amounts.

    Runs on the caller's connection so it commits together with the
    generated_invoices row. Only rows without an invoice are touched.

    Returns:
        Number of rows marked
    """
    now = _now()
    marked = 0
    for item in line_items:
        cur = conn.execute(
            """
            UPDATE transactions
            SET internal_invoice_id = ?, invoiced_at = ?, billed_markup = ?, billed_amount = ?,
                markup_percentage = ?, markup_rule_id = ?, updated_at = ?
            WHERE transaction_id = ? AND internal_invoice_id IS NULL
            """,
            (
                invoice_number, now, _dec(item.markup_amount), _dec(item.billed_amount),
                _dec(item.markup_percentage), item.applied_rule_id, now, item.transaction_id,
            ),
        )
        marked += cur.rowcount
    return marked


def release_invoiced_transactions(invoice_number: str, db_path: Optional[Path] = None) -> int:
    """Administrative correction: detach transactions from an invoice.

    Returns:
        Number of rows released
    """
    conn = get_connection(db_path)
    try:
        cur = conn.execute(
            """
            UPDATE transactions
            SET internal_invoice_id = NULL, invoiced_at = NULL, billed_markup = NULL,
                billed_amount = NULL, markup_percentage = NULL, markup_rule_id = NULL, updated_at = ?
            WHERE internal_invoice_id = ?
            """,
            (_now(), invoice_number),
        )
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()


# =============================================================================
# Transactions: reads
# =============================================================================

def get_transaction(transaction_id: str, db_path: Optional[Path] = None) -> Optional[Transaction]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM transactions WHERE transaction_id = ?", (transaction_id,)
        ).fetchone()
        return row_to_transaction(row) if row else None
    finally:
        conn.close()


def get_transactions(transaction_ids: Iterable[str], db_path: Optional[Path] = None) -> Dict[str, Transaction]:
    result: Dict[str, Transaction] = {}
    conn = get_connection(db_path)
    try:
        for batch in chunked(transaction_ids):
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE transaction_id IN ({placeholders(len(batch))})",
                batch,
            ).fetchall()
            for row in rows:
                result[row["transaction_id"]] = row_to_transaction(row)
    finally:
        conn.close()
    return result


def iter_transactions(
    where: str = "1=1",
    params: Sequence = (),
    db_path: Optional[Path] = None,
    page_size: Optional[int] = None,
) -> Iterator[Transaction]:
    """Paginated scan of transactions ordered by transaction id."""
    for row in iter_rows(
        "transactions", where, params, key="transaction_id", page_size=page_size, db_path=db_path
    ):
        yield row_to_transaction(row)


def iter_unattributed(db_path: Optional[Path] = None, page_size: Optional[int] = None) -> Iterator[Transaction]:
    return iter_transactions("client_id IS NULL", (), db_path, page_size)


def iter_window(
    start: datetime, end: datetime, db_path: Optional[Path] = None, page_size: Optional[int] = None
) -> Iterator[Transaction]:
    """Transactions charged in [start, end)."""
    return iter_transactions(
        "charge_date >= ? AND charge_date < ?", (dt_to_db(start), dt_to_db(end)), db_path, page_size
    )


def iter_client_period(
    client_id: str,
    period_start: date,
    period_end: date,
    uninvoiced_only: bool = True,
    db_path: Optional[Path] = None,
    page_size: Optional[int] = None,
) -> Iterator[Transaction]:
    """A client's transactions charged within the inclusive period."""
    lo, hi = period_bounds(period_start, period_end)
    where = "client_id = ? AND charge_date >= ? AND charge_date < ?"
    if uninvoiced_only:
        where += " AND internal_invoice_id IS NULL"
    return iter_transactions(where, (client_id, lo, hi), db_path, page_size)


def get_transactions_by_external_invoice(
    invoice_ids: Iterable[str], db_path: Optional[Path] = None
) -> Dict[str, List[Transaction]]:
    """Stored transactions grouped by platform invoice id."""
    grouped: Dict[str, List[Transaction]] = {}
    conn = get_connection(db_path)
    try:
        for batch in chunked(sorted(set(invoice_ids))):
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE external_invoice_id IN ({placeholders(len(batch))}) "
                f"ORDER BY transaction_id",
                batch,
            ).fetchall()
            for row in rows:
                grouped.setdefault(row["external_invoice_id"], []).append(row_to_transaction(row))
    finally:
        conn.close()
    return grouped


def sibling_client_ids(external_invoice_ids: Iterable[str], db_path: Optional[Path] = None) -> Dict[str, Set[str]]:
    """Distinct attributed client ids per platform invoice id."""
    result: Dict[str, Set[str]] = {}
    conn = get_connection(db_path)
    try:
        for batch in chunked(sorted(set(external_invoice_ids))):
            rows = conn.execute(
                f"""
                SELECT DISTINCT external_invoice_id, client_id FROM transactions
                WHERE external_invoice_id IN ({placeholders(len(batch))}) AND client_id IS NOT NULL
                """,
                batch,
            ).fetchall()
            for row in rows:
                result.setdefault(row["external_invoice_id"], set()).add(row["client_id"])
    finally:
        conn.close()
    return result


def summarize_unattributed(db_path: Optional[Path] = None) -> List[dict]:
    """Counts of unattributed transactions by reference type and reason."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            """
            SELECT platform_reference_type, attribution_method, COUNT(*) AS count
            FROM transactions WHERE client_id IS NULL
            GROUP BY platform_reference_type, attribution_method
            ORDER BY count DESC
            """
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


# =============================================================================
# External invoices
# =============================================================================

def upsert_external_invoices(invoices: Sequence[ExternalInvoice], db_path: Optional[Path] = None) -> int:
    if not invoices:
        return 0
    now = _now()
    conn = get_connection(db_path)
    try:
        conn.executemany(
            """
            INSERT INTO external_invoices (invoice_id, invoice_type, invoice_date, amount, currency_code, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(invoice_id) DO UPDATE SET
                invoice_type = excluded.invoice_type,
                invoice_date = excluded.invoice_date,
                amount = excluded.amount,
                currency_code = excluded.currency_code,
                updated_at = excluded.updated_at
            """,
            [
                (inv.invoice_id, inv.invoice_type, dt_to_db(inv.invoice_date), _dec(inv.amount),
                 inv.currency_code, now)
                for inv in invoices
            ],
        )
        conn.commit()
        return len(invoices)
    finally:
        conn.close()


def _row_to_external_invoice(row: sqlite3.Row) -> ExternalInvoice:
    return ExternalInvoice(
        invoice_id=row["invoice_id"],
        invoice_type=row["invoice_type"],
        invoice_date=row["invoice_date"],
        amount=Decimal(row["amount"]),
        currency_code=row["currency_code"],
    )


def get_external_invoices(invoice_ids: Iterable[str], db_path: Optional[Path] = None) -> Dict[str, ExternalInvoice]:
    result: Dict[str, ExternalInvoice] = {}
    conn = get_connection(db_path)
    try:
        for batch in chunked(sorted(set(invoice_ids))):
            rows = conn.execute(
                f"SELECT * FROM external_invoices WHERE invoice_id IN ({placeholders(len(batch))})",
                batch,
            ).fetchall()
            for row in rows:
                result[row["invoice_id"]] = _row_to_external_invoice(row)
    finally:
        conn.close()
    return result


def iter_external_invoices(
    start: datetime, end: datetime, db_path: Optional[Path] = None
) -> Iterator[ExternalInvoice]:
    """Platform invoices dated in [start, end)."""
    for row in iter_rows(
        "external_invoices", "invoice_date >= ? AND invoice_date < ?",
        (dt_to_db(start), dt_to_db(end)), key="invoice_id", db_path=db_path,
    ):
        yield _row_to_external_invoice(row)
