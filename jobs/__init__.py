"""Batch jobs: transaction sync, attribution pass and invoice generation."""

from .models import JobFailure, JobMode, JobSummary
from .schema import init_billing_db

__all__ = ["JobFailure", "JobMode", "JobSummary", "init_billing_db"]
