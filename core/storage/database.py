"""SQLite access helpers shared by every *db.py module.

The backing store caps how much a single query should return, so every
multi-row read goes through ``iter_rows`` (keyset pagination) and every
large IN-list goes through ``chunked``.
"""

import sqlite3
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar

from core.config import get_settings

T = TypeVar("T")

# SQLite's default host-parameter limit is 999 on older builds
MAX_SQL_PARAMS = 900


def default_db_path() -> Path:
    return get_settings().db_path


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get database connection with row factory."""
    conn = sqlite3.connect(str(db_path or default_db_path()), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def chunked(items: Iterable[T], size: int = MAX_SQL_PARAMS) -> Iterator[List[T]]:
    """Yield lists of at most ``size`` items."""
    it = iter(items)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


def iter_rows(
    table: str,
    where: str = "1=1",
    params: Sequence = (),
    key: str = "rowid",
    columns: str = "*",
    page_size: Optional[int] = None,
    db_path: Optional[Path] = None,
) -> Iterator[sqlite3.Row]:
    """Iterate rows of ``table`` page by page, ordered by ``key``.

    Keyset pagination: each page restarts after the last key seen, so rows
    inserted behind the cursor during iteration are not revisited.
    """
    page_size = page_size or get_settings().store_page_size
    conn = get_connection(db_path)
    try:
        last_key = None
        while True:
            clause = f"({where})"
            page_params = list(params)
            if last_key is not None:
                clause += f" AND {key} > ?"
                page_params.append(last_key)
            rows = conn.execute(
                f"SELECT {key} AS _page_key, {columns} FROM {table} "
                f"WHERE {clause} ORDER BY {key} LIMIT ?",
                page_params + [page_size],
            ).fetchall()
            if not rows:
                return
            yield from rows
            if len(rows) < page_size:
                return
            last_key = rows[-1]["_page_key"]
    finally:
        conn.close()
