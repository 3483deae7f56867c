"""Activity definitions module."""

from activities.sync import (
    sync_transaction_shard,
    sync_platform_invoices,
    attribution_pass,
    SyncShardInput,
    SyncShardOutput,
    SyncInvoicesInput,
    AttributionPassInput,
    JobSummaryOutput,
)
from activities.invoicing import (
    list_billable_clients,
    generate_client_invoice,
    ListClientsInput,
    GenerateInvoiceInput,
    GenerateInvoiceOutput,
)

__all__ = [
    # Sync activities
    "sync_transaction_shard",
    "sync_platform_invoices",
    "attribution_pass",
    "SyncShardInput",
    "SyncShardOutput",
    "SyncInvoicesInput",
    "AttributionPassInput",
    "JobSummaryOutput",
    # Invoicing activities
    "list_billable_clients",
    "generate_client_invoice",
    "ListClientsInput",
    "GenerateInvoiceInput",
    "GenerateInvoiceOutput",
]
