"""Data reference models for artifact storage and retrieval."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class DataReference(BaseModel):
    """Reference to a stored artifact with metadata for retrieval and verification.

    Attributes:
        storage_uri: Absolute file path to the artifact
        content_hash: SHA256 hash of the content for integrity verification
        content_type: MIME type (e.g., "application/json", "application/pdf")
        size_bytes: Size of the artifact in bytes
        stored_at: Timestamp when the artifact was stored
    """
    storage_uri: str = Field(..., description="Absolute file path to the artifact")
    content_hash: str = Field(..., description="SHA256 hash of content")
    content_type: str = Field(default="application/json", description="MIME type")
    size_bytes: int = Field(..., description="Size in bytes")
    stored_at: datetime = Field(default_factory=datetime.utcnow, description="Storage timestamp")


class ReconciliationReport(BaseModel):
    """Reconciliation results for a proposed invoice or a diagnostic window.

    Attributes:
        scope: What was reconciled (e.g., "preflight:CLIENT-1", "window:2024-01-01..2024-01-07")
        status: Overall status ("PASS", "WARN", "FAIL")
        checks: List of individual check results
        summary: Counts of checks by outcome and severity
        metrics: Key metrics (transaction counts, totals, discrepancy counts)
        report_ref: Reference to full report JSON if saved
    """
    scope: str = Field(..., description="Reconciliation scope")
    client_id: Optional[str] = Field(None, description="Client the report is about, if any")
    status: str = Field(..., description="Overall status: PASS, WARN, or FAIL")
    checks: list[dict] = Field(default_factory=list, description="Individual check results")
    summary: dict = Field(default_factory=dict, description="Summary information")
    metrics: dict = Field(default_factory=dict, description="Key metrics")
    report_ref: Optional[DataReference] = Field(None, description="Report artifact reference")
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_blocking(self) -> bool:
        return self.status == "FAIL"

    def failed_checks(self, severity: Optional[str] = None) -> list[dict]:
        return [
            c for c in self.checks
            if not c.get("passed") and (severity is None or c.get("severity") == severity)
        ]
