"""Create every table the pipeline uses."""

from pathlib import Path
from typing import Optional

from attribution.db import init_attribution_db
from ingestion.db import init_transaction_db
from invoicing.db import init_invoicing_db
from markup_engine.db import init_markup_db


def init_billing_db(db_path: Optional[Path] = None) -> None:
    """Initialize all tables. Safe to call repeatedly."""
    init_transaction_db(db_path)
    init_attribution_db(db_path)
    init_markup_db(db_path)
    init_invoicing_db(db_path)
