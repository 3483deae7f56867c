"""
Markup Engine Database

Creates and manages the pricing tables:
- markup_rules: conditional markup rules (global or client-scoped)
- markup_history: audit trail of every rule change
"""

import json
import sqlite3
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from core.storage.database import get_connection
from .models import MarkupRule, MarkupType


def init_markup_db(db_path: Optional[Path] = None) -> None:
    """
    Initialize the markup engine tables.

    Creates:
    - markup_rules: One row per rule; NULL condition columns are wildcards
    - markup_history: Rule change audit trail
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS markup_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                client_id TEXT,
                billing_category TEXT,
                fee_type TEXT,
                service_tier TEXT,
                weight_min_oz TEXT,
                weight_max_oz TEXT,
                markup_type TEXT NOT NULL,
                markup_value TEXT NOT NULL,
                applies_to_surcharge INTEGER DEFAULT 0,
                applies_to_insurance INTEGER DEFAULT 0,
                is_active INTEGER DEFAULT 1,
                effective_from TEXT,
                effective_to TEXT,
                description TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_markup_rules_client
            ON markup_rules(client_id, is_active)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS markup_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_id INTEGER NOT NULL,
                action TEXT NOT NULL,
                old_values TEXT,
                new_values TEXT,
                changed_by TEXT,
                reason TEXT,
                changed_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_markup_history_rule
            ON markup_history(rule_id)
        """)

        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Conversions
# =============================================================================

def _opt_str(value) -> Optional[str]:
    return None if value is None else str(value)


def _opt_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _rule_to_json(rule: MarkupRule) -> str:
    return json.dumps(asdict(rule), default=str, sort_keys=True)


def _row_to_rule(row: sqlite3.Row) -> MarkupRule:
    return MarkupRule(
        id=row["id"],
        name=row["name"],
        client_id=row["client_id"],
        billing_category=row["billing_category"],
        fee_type=row["fee_type"],
        service_tier=row["service_tier"],
        weight_min_oz=Decimal(row["weight_min_oz"]) if row["weight_min_oz"] is not None else None,
        weight_max_oz=Decimal(row["weight_max_oz"]) if row["weight_max_oz"] is not None else None,
        markup_type=MarkupType(row["markup_type"]),
        markup_value=Decimal(row["markup_value"]),
        applies_to_surcharge=bool(row["applies_to_surcharge"]),
        applies_to_insurance=bool(row["applies_to_insurance"]),
        is_active=bool(row["is_active"]),
        effective_from=_opt_date(row["effective_from"]),
        effective_to=_opt_date(row["effective_to"]),
        description=row["description"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _rule_params(rule: MarkupRule) -> tuple:
    return (
        rule.name,
        rule.client_id,
        rule.billing_category.value if rule.billing_category else None,
        rule.fee_type,
        rule.service_tier,
        _opt_str(rule.weight_min_oz),
        _opt_str(rule.weight_max_oz),
        rule.markup_type.value,
        str(rule.markup_value),
        1 if rule.applies_to_surcharge else 0,
        1 if rule.applies_to_insurance else 0,
        1 if rule.is_active else 0,
        _opt_str(rule.effective_from),
        _opt_str(rule.effective_to),
        rule.description,
    )


def _record_history(
    conn: sqlite3.Connection,
    rule_id: int,
    action: str,
    old: Optional[str],
    new: Optional[str],
    changed_by: Optional[str],
    reason: Optional[str],
) -> None:
    conn.execute(
        """
        INSERT INTO markup_history (rule_id, action, old_values, new_values, changed_by, reason, changed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (rule_id, action, old, new, changed_by, reason, datetime.utcnow().isoformat()),
    )


# =============================================================================
# Rule CRUD Operations
# =============================================================================

def add_rule(
    rule: MarkupRule,
    changed_by: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> MarkupRule:
    """
    Insert a markup rule and record it in the history table.

    Returns:
        The rule with its database ID
    """
    conn = get_connection(db_path)
    try:
        created = rule.created_at.isoformat()
        cursor = conn.execute(
            """
            INSERT INTO markup_rules (
                name, client_id, billing_category, fee_type, service_tier,
                weight_min_oz, weight_max_oz, markup_type, markup_value,
                applies_to_surcharge, applies_to_insurance, is_active,
                effective_from, effective_to, description, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            _rule_params(rule) + (created, created),
        )
        rule.id = cursor.lastrowid
        _record_history(conn, rule.id, "created", None, _rule_to_json(rule), changed_by, None)
        conn.commit()
        return rule
    finally:
        conn.close()


def update_rule(
    rule: MarkupRule,
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> MarkupRule:
    """Overwrite a stored rule; the previous values go to markup_history."""
    if rule.id is None:
        raise ValueError("Cannot update a rule without an id")
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM markup_rules WHERE id = ?", (rule.id,)).fetchone()
        if row is None:
            raise KeyError(f"Markup rule {rule.id} not found")
        old = _rule_to_json(_row_to_rule(row))
        conn.execute(
            """
            UPDATE markup_rules SET
                name = ?, client_id = ?, billing_category = ?, fee_type = ?, service_tier = ?,
                weight_min_oz = ?, weight_max_oz = ?, markup_type = ?, markup_value = ?,
                applies_to_surcharge = ?, applies_to_insurance = ?, is_active = ?,
                effective_from = ?, effective_to = ?, description = ?, updated_at = ?
            WHERE id = ?
            """,
            _rule_params(rule) + (datetime.utcnow().isoformat(), rule.id),
        )
        _record_history(conn, rule.id, "updated", old, _rule_to_json(rule), changed_by, reason)
        conn.commit()
        return rule
    finally:
        conn.close()


def deactivate_rule(
    rule_id: int,
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
    db_path: Optional[Path] = None,
) -> bool:
    """Switch a rule off. Rules are never deleted so history stays resolvable."""
    conn = get_connection(db_path)
    try:
        cur = conn.execute(
            "UPDATE markup_rules SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
            (datetime.utcnow().isoformat(), rule_id),
        )
        if cur.rowcount:
            _record_history(conn, rule_id, "deactivated", None, None, changed_by, reason)
        conn.commit()
        return bool(cur.rowcount)
    finally:
        conn.close()


def get_rule(rule_id: int, db_path: Optional[Path] = None) -> Optional[MarkupRule]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM markup_rules WHERE id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None
    finally:
        conn.close()


def get_rules_for_client(
    client_id: Optional[str],
    include_inactive: bool = False,
    db_path: Optional[Path] = None,
) -> List[MarkupRule]:
    """
    All rules that can apply to a client: its own plus the global ones.

    Ordering carries no meaning; selection is done by specificity in
    markup_engine.rules.
    """
    sql = "SELECT * FROM markup_rules WHERE (client_id IS NULL OR client_id = ?)"
    if not include_inactive:
        sql += " AND is_active = 1"
    conn = get_connection(db_path)
    try:
        rows = conn.execute(sql + " ORDER BY id", (client_id,)).fetchall()
        return [_row_to_rule(r) for r in rows]
    finally:
        conn.close()


def list_rules(include_inactive: bool = True, db_path: Optional[Path] = None) -> List[MarkupRule]:
    sql = "SELECT * FROM markup_rules"
    if not include_inactive:
        sql += " WHERE is_active = 1"
    conn = get_connection(db_path)
    try:
        return [_row_to_rule(r) for r in conn.execute(sql + " ORDER BY id").fetchall()]
    finally:
        conn.close()


def get_rule_history(rule_id: int, db_path: Optional[Path] = None) -> List[dict]:
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM markup_history WHERE rule_id = ? ORDER BY id", (rule_id,)
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()
