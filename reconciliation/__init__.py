"""Reconciliation against the platform's own invoices and the preflight gate."""

from reconciliation.engine import (
    AMOUNT_TOLERANCE,
    CheckResult,
    CheckStatus,
    ExternalInvoiceView,
    Severity,
    build_report,
    preflight_invoice,
    reconcile_window,
)

__all__ = [
    "AMOUNT_TOLERANCE",
    "CheckResult",
    "CheckStatus",
    "ExternalInvoiceView",
    "Severity",
    "build_report",
    "preflight_invoice",
    "reconcile_window",
]
