"""Fulfillment platform connector: HTTP client and wire models."""

from connectors.fulfillment.fp_client import (
    FPClient,
    FPApiConfig,
    RetryConfig,
    FPApiError,
    FPAuthError,
    FPNotFoundError,
    FPRateLimitError,
    FPValidationError,
    FPRetryExhaustedError,
)
from connectors.fulfillment.fp_models import (
    RawTransaction,
    RawInvoice,
    TransactionPage,
    TRANSACTION_TYPES,
    REFERENCE_TYPES,
    INVOICE_TYPES,
    map_reference_kind,
)

__all__ = [
    "FPClient",
    "FPApiConfig",
    "RetryConfig",
    "FPApiError",
    "FPAuthError",
    "FPNotFoundError",
    "FPRateLimitError",
    "FPValidationError",
    "FPRetryExhaustedError",
    "RawTransaction",
    "RawInvoice",
    "TransactionPage",
    "TRANSACTION_TYPES",
    "REFERENCE_TYPES",
    "INVOICE_TYPES",
    "map_reference_kind",
]
