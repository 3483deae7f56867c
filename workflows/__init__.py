"""Workflow definitions module."""

from workflows.billing_workflow import (
    TransactionSyncWorkflow,
    TransactionSyncInput,
    InvoiceGenerationWorkflow,
    InvoiceGenerationInput,
)

__all__ = [
    "TransactionSyncWorkflow",
    "TransactionSyncInput",
    "InvoiceGenerationWorkflow",
    "InvoiceGenerationInput",
]
