"""Domain exceptions for the billing pipeline.

External API failures live with the platform client in
connectors/fulfillment/fp_client.py.
"""

from decimal import Decimal
from typing import Optional


class BillingError(Exception):
    """Base exception for billing pipeline errors."""
    pass


class ConfigError(BillingError):
    """Invalid or missing configuration."""
    pass


class AttributionConflictError(BillingError):
    """An attributed transaction would be moved to a different client."""

    def __init__(self, transaction_id: str, current_client_id: str, new_client_id: str):
        self.transaction_id = transaction_id
        self.current_client_id = current_client_id
        self.new_client_id = new_client_id
        super().__init__(
            f"Transaction {transaction_id} is attributed to {current_client_id}, "
            f"refusing to re-attribute to {new_client_id}"
        )


class RoundingToleranceExceeded(BillingError):
    """A category rounding residual is larger than the allowed tolerance."""

    def __init__(self, category: str, residual: Decimal, tolerance: Decimal):
        self.category = category
        self.residual = residual
        self.tolerance = tolerance
        super().__init__(
            f"Rounding residual {residual} in category '{category}' exceeds tolerance {tolerance}"
        )


class InvoiceNumberCollisionError(BillingError):
    """The store already holds an invoice with this number."""

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(f"Invoice number {invoice_number} already exists")


class ClientNotFoundError(BillingError):
    """No client record for the given id."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client not found: {client_id}")


class PreflightBlockedError(BillingError):
    """Reconciliation preflight failed; the invoice must not finalize."""

    def __init__(self, message: str, report: Optional[object] = None):
        self.report = report
        super().__init__(message)
