"""Invoicing Database Operations.

Tables:
- clients: billing tenants and their next invoice sequence number
- generated_invoices: finalized invoices (UNIQUE invoice_number)

Invoice numbers are reserved with BEGIN IMMEDIATE so two generation runs
for the same client serialize on the read-and-increment.
"""

import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Tuple

from core.errors import BillingError, ClientNotFoundError, InvoiceNumberCollisionError
from core.models.canonical import Client
from core.models.refs import DataReference
from core.observability.logging import get_logger
from core.storage.database import get_connection
from ingestion.db import mark_transactions_invoiced, release_invoiced_transactions
from invoicing.assembler import AssembledInvoice, format_invoice_number

logger = get_logger(__name__)

STATUS_FINALIZED = "finalized"
STATUS_RELEASED = "released"


def init_invoicing_db(db_path: Optional[Path] = None) -> None:
    """Initialize clients and generated_invoices tables."""
    conn = get_connection(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS clients (
                client_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                short_code TEXT NOT NULL,
                next_invoice_number INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER DEFAULT 1,
                email TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS generated_invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                invoice_number TEXT NOT NULL UNIQUE,
                client_id TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                invoice_date TEXT NOT NULL,
                subtotal TEXT NOT NULL,
                total_markup TEXT NOT NULL,
                total_tax TEXT NOT NULL,
                total_amount TEXT NOT NULL,
                total_credits TEXT NOT NULL,
                amount_due TEXT NOT NULL,
                line_count INTEGER NOT NULL,
                document_uri TEXT,
                document_sha256 TEXT,
                content_type TEXT,
                status TEXT NOT NULL DEFAULT 'finalized',
                created_at TEXT NOT NULL,
                released_at TEXT
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_gen_inv_client ON generated_invoices(client_id, period_start)")
        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Clients
# =============================================================================

def _row_to_client(row: sqlite3.Row) -> Client:
    return Client(
        client_id=row["client_id"],
        name=row["name"],
        short_code=row["short_code"],
        next_invoice_number=row["next_invoice_number"],
        is_active=bool(row["is_active"]),
        email=row["email"],
    )


def upsert_client(client: Client, db_path: Optional[Path] = None) -> None:
    """Insert or update a client.

    The sequence number only moves forward: an upsert can raise it but
    never lower it.
    """
    now = datetime.utcnow().isoformat()
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO clients (client_id, name, short_code, next_invoice_number, is_active, email,
                                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(client_id) DO UPDATE SET
                name = excluded.name,
                short_code = excluded.short_code,
                next_invoice_number = MAX(clients.next_invoice_number, excluded.next_invoice_number),
                is_active = excluded.is_active,
                email = excluded.email,
                updated_at = excluded.updated_at
            """,
            (client.client_id, client.name, client.short_code, client.next_invoice_number,
             1 if client.is_active else 0, client.email, now, now),
        )
        conn.commit()
    finally:
        conn.close()


def get_client(client_id: str, db_path: Optional[Path] = None) -> Optional[Client]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM clients WHERE client_id = ?", (client_id,)).fetchone()
        return _row_to_client(row) if row else None
    finally:
        conn.close()


def list_clients(active_only: bool = True, db_path: Optional[Path] = None) -> List[Client]:
    sql = "SELECT * FROM clients"
    if active_only:
        sql += " WHERE is_active = 1"
    conn = get_connection(db_path)
    try:
        return [_row_to_client(r) for r in conn.execute(sql + " ORDER BY client_id").fetchall()]
    finally:
        conn.close()


# =============================================================================
# Invoice numbers
# =============================================================================

def peek_invoice_number(
    client_id: str,
    invoice_date: date,
    prefix: str,
    db_path: Optional[Path] = None,
) -> str:
    """The number the next reservation would return. Reserves nothing."""
    client = get_client(client_id, db_path)
    if client is None:
        raise ClientNotFoundError(client_id)
    return format_invoice_number(prefix, client.short_code, client.next_invoice_number, invoice_date)


def reserve_invoice_number(
    client_id: str,
    invoice_date: date,
    prefix: str,
    db_path: Optional[Path] = None,
) -> Tuple[str, int]:
    """Atomically take the client's next sequence number.

    Returns:
        (invoice_number, sequence)

    Raises:
        ClientNotFoundError: Unknown client
    """
    conn = get_connection(db_path)
    conn.isolation_level = None
    try:
        # Write lock before the read: concurrent reservations queue here
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(
            "SELECT short_code, next_invoice_number FROM clients WHERE client_id = ?", (client_id,)
        ).fetchone()
        if row is None:
            conn.execute("ROLLBACK")
            raise ClientNotFoundError(client_id)
        sequence = row["next_invoice_number"]
        conn.execute(
            "UPDATE clients SET next_invoice_number = ?, updated_at = ? WHERE client_id = ?",
            (sequence + 1, datetime.utcnow().isoformat(), client_id),
        )
        conn.execute("COMMIT")
    except sqlite3.Error:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()

    number = format_invoice_number(prefix, row["short_code"], sequence, invoice_date)
    logger.info(f"Reserved invoice number {number}", extra_fields={"client_id": client_id, "sequence": sequence})
    return number, sequence


# =============================================================================
# Generated invoices
# =============================================================================

def _insert_generated_invoice(
    conn: sqlite3.Connection,
    invoice: AssembledInvoice,
    document: Optional[DataReference],
) -> None:
    s = invoice.summary
    try:
        conn.execute(
            """
            INSERT INTO generated_invoices (
                invoice_number, client_id, period_start, period_end, invoice_date,
                subtotal, total_markup, total_tax, total_amount, total_credits, amount_due, line_count,
                document_uri, document_sha256, content_type, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice.invoice_number, invoice.client_id, invoice.period_start.isoformat(),
                invoice.period_end.isoformat(), invoice.invoice_date.isoformat(),
                str(s.subtotal), str(s.total_markup), str(s.total_tax), str(s.total_amount),
                str(s.total_credits), str(s.amount_due), s.line_count,
                document.storage_uri if document else None,
                document.content_hash if document else None,
                document.content_type if document else None,
                STATUS_FINALIZED, datetime.utcnow().isoformat(),
            ),
        )
    except sqlite3.IntegrityError as e:
        raise InvoiceNumberCollisionError(invoice.invoice_number) from e


def finalize_invoice(
    invoice: AssembledInvoice,
    document: Optional[DataReference] = None,
    db_path: Optional[Path] = None,
) -> int:
    """Record the invoice and mark its transactions in one transaction.

    Returns:
        Number of transactions marked

    Raises:
        InvoiceNumberCollisionError: The number is already recorded
        BillingError: A line's transaction is already on another invoice
    """
    conn = get_connection(db_path)
    try:
        _insert_generated_invoice(conn, invoice, document)
        marked = mark_transactions_invoiced(conn, invoice.invoice_number, invoice.line_items)
        if marked != len(invoice.line_items):
            raise BillingError(
                f"Invoice {invoice.invoice_number}: only {marked} of {len(invoice.line_items)} "
                f"transactions were still uninvoiced"
            )
        conn.commit()
        return marked
    except BillingError:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_generated_invoice(invoice_number: str, db_path: Optional[Path] = None) -> Optional[dict]:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM generated_invoices WHERE invoice_number = ?", (invoice_number,)
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def release_invoice(invoice_number: str, db_path: Optional[Path] = None) -> int:
    """Administrative correction: mark an invoice released and free its transactions.

    The number stays recorded so it is never reissued.

    Returns:
        Number of transactions released
    """
    conn = get_connection(db_path)
    try:
        cur = conn.execute(
            "UPDATE generated_invoices SET status = ?, released_at = ? WHERE invoice_number = ? AND status = ?",
            (STATUS_RELEASED, datetime.utcnow().isoformat(), invoice_number, STATUS_FINALIZED),
        )
        conn.commit()
        if not cur.rowcount:
            return 0
    finally:
        conn.close()
    released = release_invoiced_transactions(invoice_number, db_path)
    logger.warning(f"Released invoice {invoice_number}", extra_fields={"transactions": released})
    return released
