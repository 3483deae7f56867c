"""Reconciliation engine for platform invoices and proposed client invoices.

Exposes high-level functions:
- preflight_invoice(invoice, ...) -> ReconciliationReport (finalization gate)
- reconcile_window(start, end, ...) -> ReconciliationReport (diagnostics)

Reads only; nothing here mutates stored data. A FAIL report blocks
finalization.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from core.models.canonical import ExternalInvoice, LineItem, ReferenceKind, Transaction
from core.models.refs import ReconciliationReport
from core.money import CENT, ZERO, amounts_match, money_sum
from core.observability.logging import get_logger
from ingestion.db import (
    get_external_invoices,
    get_transactions,
    get_transactions_by_external_invoice,
    iter_client_period,
    iter_external_invoices,
    iter_window,
)
from invoicing.assembler import AssembledInvoice

logger = get_logger(__name__)


# =============================================================================
# Configuration & Data Structures
# =============================================================================

AMOUNT_TOLERANCE = CENT


class Severity(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"
    INFO = "INFO"


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class CheckResult:
    """Result of a single reconciliation check."""

    def __init__(
        self,
        check_id: str,
        severity: Severity,
        passed: bool,
        message: str,
        evidence: Optional[Dict] = None,
    ):
        self.check_id = check_id
        self.severity = severity
        self.passed = passed
        self.message = message
        self.evidence = evidence or {}

    def to_dict(self) -> Dict:
        return {
            "check_id": self.check_id,
            "severity": self.severity.value,
            "passed": self.passed,
            "message": self.message,
            "evidence": self.evidence,
        }


@dataclass
class ExternalInvoiceView:
    """One platform invoice with everything we know locally about it.

    Attributes:
        invoice: The platform's invoice record
        local_transactions: Stored transactions carrying this invoice id
        platform_transaction_ids: Ids the platform lists on the invoice, when
            that listing was fetched (None = not fetched, listing checks skip)
        listing_error: Why the listing could not be fetched, when it was attempted
    """
    invoice: ExternalInvoice
    local_transactions: List[Transaction] = field(default_factory=list)
    platform_transaction_ids: Optional[Set[str]] = None
    listing_error: Optional[str] = None

    @property
    def invoice_id(self) -> str:
        return self.invoice.invoice_id

    @property
    def local_ids(self) -> Set[str]:
        return {t.transaction_id for t in self.local_transactions}


def _ids(values: Iterable[str], limit: int = 50) -> List[str]:
    return sorted(values)[:limit]


# =============================================================================
# Per External Invoice Checks
# =============================================================================

def check_count_match(view: ExternalInvoiceView) -> CheckResult:
    """Local transaction count equals the platform's listing."""
    if view.platform_transaction_ids is None and view.listing_error:
        return CheckResult(
            "X1_COUNT_MATCH", Severity.WARN, False,
            f"Invoice {view.invoice_id}: platform listing unavailable, count and membership unverified",
            {"invoice_id": view.invoice_id, "local_count": len(view.local_transactions), "error": view.listing_error},
        )
    if view.platform_transaction_ids is None:
        return CheckResult(
            check_id="X1_COUNT_MATCH",
            severity=Severity.INFO,
            passed=True,
            message=f"Invoice {view.invoice_id}: platform listing not fetched, count not compared",
            evidence={"invoice_id": view.invoice_id, "local_count": len(view.local_transactions)},
        )
    local = len(view.local_ids)
    remote = len(view.platform_transaction_ids)
    evidence = {"invoice_id": view.invoice_id, "local_count": local, "platform_count": remote}
    if local == remote:
        return CheckResult("X1_COUNT_MATCH", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: {local} transactions on both sides", evidence)
    return CheckResult("X1_COUNT_MATCH", Severity.BLOCK, False,
                       f"Invoice {view.invoice_id}: {local} local vs {remote} platform transactions", evidence)


def check_amount_match(view: ExternalInvoiceView, tolerance: Decimal = AMOUNT_TOLERANCE) -> CheckResult:
    """Sum of local transaction amounts equals the platform invoice amount."""
    local_sum = money_sum(t.amount for t in view.local_transactions)
    reported = view.invoice.amount
    evidence = {
        "invoice_id": view.invoice_id,
        "local_sum": str(local_sum),
        "platform_amount": str(reported),
        "difference": str(local_sum - reported),
    }
    if amounts_match(local_sum, reported, tolerance):
        return CheckResult("X2_AMOUNT_MATCH", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: amounts match", evidence)
    return CheckResult(
        "X2_AMOUNT_MATCH", Severity.BLOCK, False,
        f"Invoice {view.invoice_id}: local {local_sum} vs platform {reported} (diff {local_sum - reported})",
        evidence,
    )


def check_missing_locally(view: ExternalInvoiceView) -> CheckResult:
    """Transactions the platform lists that we never stored."""
    if view.platform_transaction_ids is None:
        return CheckResult("X3_MISSING_LOCALLY", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: platform listing not fetched",
                           {"invoice_id": view.invoice_id})
    missing = view.platform_transaction_ids - view.local_ids
    evidence = {"invoice_id": view.invoice_id, "missing_count": len(missing), "missing": _ids(missing)}
    if not missing:
        return CheckResult("X3_MISSING_LOCALLY", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: every platform transaction is stored", evidence)
    return CheckResult("X3_MISSING_LOCALLY", Severity.BLOCK, False,
                       f"Invoice {view.invoice_id}: {len(missing)} platform transactions missing locally",
                       evidence)


def check_phantom_local(view: ExternalInvoiceView) -> CheckResult:
    """Stored transactions that claim the invoice but the platform does not list.

    Flagged for manual review only; they are never deleted automatically.
    """
    if view.platform_transaction_ids is None:
        return CheckResult("X4_PHANTOM_LOCAL", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: platform listing not fetched",
                           {"invoice_id": view.invoice_id})
    phantom = view.local_ids - view.platform_transaction_ids
    evidence = {"invoice_id": view.invoice_id, "phantom_count": len(phantom), "phantom": _ids(phantom)}
    if not phantom:
        return CheckResult("X4_PHANTOM_LOCAL", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: no phantom local records", evidence)
    return CheckResult("X4_PHANTOM_LOCAL", Severity.WARN, False,
                       f"Invoice {view.invoice_id}: {len(phantom)} local records not confirmed by the platform",
                       evidence)


def check_mixed_clients(view: ExternalInvoiceView) -> CheckResult:
    """Every attributed transaction on one platform invoice belongs to one client."""
    owners: Dict[str, int] = {}
    for t in view.local_transactions:
        if t.client_id:
            owners[t.client_id] = owners.get(t.client_id, 0) + 1
    evidence = {"invoice_id": view.invoice_id, "clients": owners}
    if len(owners) <= 1:
        return CheckResult("X5_SINGLE_CLIENT", Severity.INFO, True,
                           f"Invoice {view.invoice_id}: consistent client attribution", evidence)
    return CheckResult("X5_SINGLE_CLIENT", Severity.BLOCK, False,
                       f"Invoice {view.invoice_id}: transactions attributed to {len(owners)} clients",
                       evidence)


def check_external_invoice(view: ExternalInvoiceView) -> List[CheckResult]:
    return [
        check_count_match(view),
        check_amount_match(view),
        check_missing_locally(view),
        check_phantom_local(view),
        check_mixed_clients(view),
    ]


# =============================================================================
# Client Checks
# =============================================================================

def check_unattributed_siblings(views: Sequence[ExternalInvoiceView]) -> CheckResult:
    """Unattributed transactions sharing a platform invoice with the client's lines."""
    gaps = {
        v.invoice_id: _ids(t.transaction_id for t in v.local_transactions if not t.client_id)
        for v in views
    }
    gaps = {k: v for k, v in gaps.items() if v}
    count = sum(len(v) for v in gaps.values())
    if not gaps:
        return CheckResult("C1_UNATTRIBUTED_SIBLINGS", Severity.INFO, True,
                           "No unattributed siblings on the client's platform invoices", {})
    return CheckResult("C1_UNATTRIBUTED_SIBLINGS", Severity.WARN, False,
                       f"{count} unattributed transactions share platform invoices with this client",
                       {"by_invoice": gaps, "count": count})


def check_already_invoiced(line_items: Sequence[LineItem], stored: Mapping[str, Transaction]) -> CheckResult:
    """No proposed line is already on a finalized invoice."""
    taken = {
        i.transaction_id: stored[i.transaction_id].internal_invoice_id
        for i in line_items
        if i.transaction_id in stored and stored[i.transaction_id].internal_invoice_id
    }
    if not taken:
        return CheckResult("C2_NOT_ALREADY_INVOICED", Severity.INFO, True,
                           "No line is already invoiced", {})
    return CheckResult("C2_NOT_ALREADY_INVOICED", Severity.BLOCK, False,
                       f"{len(taken)} lines are already on another invoice",
                       {"transactions": dict(sorted(taken.items())[:50])})


def check_line_coverage(
    line_items: Sequence[LineItem],
    expected_ids: Set[str],
    stored: Mapping[str, Transaction],
    client_id: str,
) -> CheckResult:
    """Proposed lines are exactly the client's eligible transactions."""
    line_ids = {i.transaction_id for i in line_items}
    missing = expected_ids - line_ids
    unknown = {t for t in line_ids if t not in stored}
    foreign = {t for t in line_ids if t in stored and stored[t].client_id != client_id}
    duplicates = len(line_items) - len(line_ids)
    evidence = {
        "line_count": len(line_items),
        "expected_count": len(expected_ids),
        "missing": _ids(missing),
        "unknown": _ids(unknown),
        "foreign": _ids(foreign),
        "duplicates": duplicates,
    }
    if not (missing or unknown or foreign or duplicates):
        return CheckResult("C3_LINE_COVERAGE", Severity.INFO, True,
                           f"{len(line_items)} lines match the eligible transactions", evidence)
    return CheckResult(
        "C3_LINE_COVERAGE", Severity.BLOCK, False,
        f"Line/transaction mismatch: {len(missing)} missing, {len(unknown)} unknown, "
        f"{len(foreign)} other client, {duplicates} duplicated",
        evidence,
    )


# =============================================================================
# Proposed Invoice Checks
# =============================================================================

def check_line_math(line_items: Sequence[LineItem]) -> CheckResult:
    """billed == round(base + surcharge + insurance + markup) on every charge line."""
    bad = [
        {"transaction_id": i.transaction_id, "billed": str(i.billed_amount), "expected": str(i.expected_billed())}
        for i in line_items
        if not i.is_credit and i.billed_amount != i.expected_billed()
    ]
    if not bad:
        return CheckResult("I1_LINE_MATH", Severity.INFO, True, "Line arithmetic holds", {})
    return CheckResult("I1_LINE_MATH", Severity.BLOCK, False,
                       f"{len(bad)} lines fail billed = base + surcharge + insurance + markup",
                       {"lines": bad[:50]})


def check_summary_invariants(invoice: AssembledInvoice) -> CheckResult:
    """Category totals equal their lines; top-level totals equal the categories."""
    s = invoice.summary
    problems = []

    for totals in s.by_category:
        lines = [i for i in invoice.line_items if i.category == totals.category and not i.is_credit]
        line_sum = money_sum(i.billed_amount for i in lines)
        if line_sum != totals.billed or len(lines) != totals.count:
            problems.append(f"{totals.category.value}: lines {line_sum} vs total {totals.billed}")

    category_sum = money_sum(c.billed for c in s.by_category)
    if category_sum != s.total_amount:
        problems.append(f"categories {category_sum} vs total_amount {s.total_amount}")
    if money_sum(c.base for c in s.by_category) != s.subtotal:
        problems.append("categories do not sum to subtotal")
    if money_sum(c.markup for c in s.by_category) != s.total_markup:
        problems.append("categories do not sum to total_markup")

    credit_sum = money_sum(i.billed_amount for i in invoice.line_items if i.is_credit)
    if credit_sum != s.total_credits:
        problems.append(f"credit lines {credit_sum} vs total_credits {s.total_credits}")
    if s.amount_due != s.total_amount + s.total_tax + s.total_credits:
        problems.append("amount_due != total_amount + total_tax + total_credits")
    if s.line_count != len(invoice.line_items):
        problems.append(f"line_count {s.line_count} vs {len(invoice.line_items)} lines")

    evidence = {
        "total_amount": str(s.total_amount),
        "total_credits": str(s.total_credits),
        "amount_due": str(s.amount_due),
        "problems": problems,
    }
    if not problems:
        return CheckResult("I2_SUMMARY_INVARIANTS", Severity.INFO, True, "Summary totals are consistent", evidence)
    return CheckResult("I2_SUMMARY_INVARIANTS", Severity.BLOCK, False,
                       f"{len(problems)} summary invariant violations", evidence)


# =============================================================================
# Report
# =============================================================================

def build_report(
    scope: str,
    checks: Sequence[CheckResult],
    metrics: Optional[dict] = None,
    client_id: Optional[str] = None,
) -> ReconciliationReport:
    """Roll check results into a report. Only failed checks affect status."""
    failed = [c for c in checks if not c.passed]
    if any(c.severity == Severity.BLOCK for c in failed):
        status = CheckStatus.FAIL.value
    elif any(c.severity == Severity.WARN for c in failed):
        status = CheckStatus.WARN.value
    else:
        status = CheckStatus.PASS.value

    for c in failed:
        if c.severity == Severity.BLOCK:
            logger.error(f"[{scope}] {c.check_id}: {c.message}", extra_fields={"check_id": c.check_id})
        elif c.severity == Severity.WARN:
            logger.warning(f"[{scope}] {c.check_id}: {c.message}", extra_fields={"check_id": c.check_id})

    return ReconciliationReport(
        scope=scope,
        client_id=client_id,
        status=status,
        checks=[c.to_dict() for c in checks],
        summary={
            "status": status,
            "total_checks": len(checks),
            "passed_checks": sum(1 for c in checks if c.passed),
            "blocking_issues": sum(1 for c in failed if c.severity == Severity.BLOCK),
            "warnings": sum(1 for c in failed if c.severity == Severity.WARN),
        },
        metrics=metrics or {},
    )


def load_external_views(
    invoice_ids: Iterable[str],
    platform_listings: Optional[Mapping[str, Set[str]]] = None,
    db_path: Optional[Path] = None,
    listing_errors: Optional[Mapping[str, str]] = None,
) -> List[ExternalInvoiceView]:
    """Build views for stored platform invoices; unknown ids are skipped."""
    platform_listings = platform_listings or {}
    listing_errors = listing_errors or {}
    invoice_ids = sorted(set(invoice_ids))
    invoices = get_external_invoices(invoice_ids, db_path)
    grouped = get_transactions_by_external_invoice(invoice_ids, db_path)
    return [
        ExternalInvoiceView(
            invoice=invoices[i],
            local_transactions=grouped.get(i, []),
            platform_transaction_ids=platform_listings.get(i),
            listing_error=listing_errors.get(i),
        )
        for i in invoice_ids
        if i in invoices
    ]


# =============================================================================
# Entry Points
# =============================================================================

def preflight_invoice(
    invoice: AssembledInvoice,
    platform_listings: Optional[Mapping[str, Set[str]]] = None,
    db_path: Optional[Path] = None,
    listing_errors: Optional[Mapping[str, str]] = None,
) -> ReconciliationReport:
    """Validate a proposed invoice before it is finalized.

    Args:
        invoice: Assembled (not yet finalized) invoice
        platform_listings: Optional {platform invoice id: listed transaction ids}
        db_path: Backing store
        listing_errors: {platform invoice id: error} for listings that could
            not be fetched; each becomes a WARN instead of a silent pass

    Returns:
        ReconciliationReport; status FAIL means the invoice must not finalize
    """
    client_id = invoice.client_id
    line_ids = [i.transaction_id for i in invoice.line_items]
    stored = get_transactions(line_ids, db_path)
    expected_ids = {
        t.transaction_id
        for t in iter_client_period(client_id, invoice.period_start, invoice.period_end, True, db_path)
    }

    referenced = {t.external_invoice_id for t in stored.values() if t.external_invoice_id}
    views = load_external_views(referenced, platform_listings, db_path, listing_errors)
    unknown_invoices = referenced - {v.invoice_id for v in views}

    checks: List[CheckResult] = [
        check_line_math(invoice.line_items),
        check_summary_invariants(invoice),
        check_line_coverage(invoice.line_items, expected_ids, stored, client_id),
        check_already_invoiced(invoice.line_items, stored),
    ]
    for view in views:
        checks.extend(check_external_invoice(view))
    checks.append(check_unattributed_siblings(views))
    if unknown_invoices:
        checks.append(CheckResult(
            "X0_EXTERNAL_INVOICE_KNOWN", Severity.WARN, False,
            f"{len(unknown_invoices)} referenced platform invoices are not synced",
            {"invoice_ids": _ids(unknown_invoices)},
        ))

    metrics = {
        "line_count": len(invoice.line_items),
        "eligible_transactions": len(expected_ids),
        "platform_invoices": len(views),
        "total_amount": str(invoice.summary.total_amount),
        "amount_due": str(invoice.summary.amount_due),
        "rounding_adjustments": len(invoice.adjustments),
    }
    return build_report(f"preflight:{client_id}:{invoice.invoice_number}", checks, metrics, client_id)


def reconcile_window(
    start: datetime,
    end: datetime,
    platform_listings: Optional[Mapping[str, Set[str]]] = None,
    db_path: Optional[Path] = None,
    listing_errors: Optional[Mapping[str, str]] = None,
) -> ReconciliationReport:
    """Diagnostics over every platform invoice dated in [start, end)."""
    invoice_ids = [inv.invoice_id for inv in iter_external_invoices(start, end, db_path)]
    views = load_external_views(invoice_ids, platform_listings, db_path, listing_errors)

    checks: List[CheckResult] = []
    for view in views:
        checks.extend(check_external_invoice(view))
    checks.append(check_unattributed_siblings(views))

    unattributed = 0
    tenant_direct = 0
    window_total = ZERO
    count = 0
    for tx in iter_window(start, end, db_path):
        count += 1
        window_total += tx.amount
        if tx.client_id is None:
            unattributed += 1
            if tx.reference_kind == ReferenceKind.TENANT_DIRECT:
                tenant_direct += 1
    billable_gaps = unattributed - tenant_direct
    checks.append(CheckResult(
        "W1_ATTRIBUTION_GAPS",
        Severity.WARN if billable_gaps else Severity.INFO,
        billable_gaps == 0,
        f"{billable_gaps} unattributed billable transactions in window ({tenant_direct} tenant-direct excluded)",
        {"unattributed": unattributed, "tenant_direct": tenant_direct},
    ))

    metrics = {
        "transactions": count,
        "window_total": str(window_total),
        "platform_invoices": len(views),
        "platform_invoice_total": str(money_sum(v.invoice.amount for v in views)),
        "unattributed": unattributed,
    }
    return build_report(f"window:{start.date().isoformat()}..{end.date().isoformat()}", checks, metrics)
