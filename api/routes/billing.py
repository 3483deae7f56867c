"""Billing endpoints.

Read-only views over the pipeline: dry-run invoice previews with their
preflight report, markup rule previews and attribution gaps. Nothing here
writes to the store.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from core.config import get_settings
from core.errors import ClientNotFoundError, RoundingToleranceExceeded
from core.models.canonical import BillingCategory
from core.money import round_money, to_decimal
from ingestion.db import summarize_unattributed
from jobs.invoice_job import generate_invoice
from jobs.models import JobMode
from markup_engine.db import get_rules_for_client
from markup_engine.engine import preview_markup


router = APIRouter()


class PreflightRequest(BaseModel):
    """Request for a dry-run invoice and its preflight report."""
    client_id: str
    period_start: date
    period_end: date
    invoice_date: Optional[date] = None


class PreflightResponse(BaseModel):
    """Dry-run invoice preview plus validator report."""
    client_id: str
    status: str
    invoice: Optional[Dict[str, Any]] = None
    report: Optional[Dict[str, Any]] = None


class MarkupPreviewRequest(BaseModel):
    """Context to match markup rules against."""
    client_id: str
    billing_category: BillingCategory
    fee_type: str
    base_amount: Decimal
    service_tier: Optional[str] = None
    weight_oz: Optional[Decimal] = None
    charge_date: Optional[date] = None


class MarkupPreviewResponse(BaseModel):
    """Winning rule, the markup it yields and every rule that matched (winner first)."""
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    markup_exact: str
    markup_amount: str
    markup_percentage: str
    billed_amount: str
    candidates: List[str] = Field(default_factory=list)


class UnattributedGroup(BaseModel):
    platform_reference_type: Optional[str] = None
    attribution_method: Optional[str] = None
    count: int


class UnattributedResponse(BaseModel):
    total: int
    groups: List[UnattributedGroup] = Field(default_factory=list)


@router.post("/preflight", response_model=PreflightResponse)
async def preflight(request: PreflightRequest) -> PreflightResponse:
    """Generate an invoice in dry-run mode and return the preview and report."""
    if request.period_end < request.period_start:
        raise HTTPException(status_code=400, detail="period_end is before period_start")
    settings = get_settings()
    try:
        result = generate_invoice(
            request.client_id,
            request.period_start,
            request.period_end,
            JobMode.DRY_RUN,
            db_path=settings.db_path,
            invoice_date=request.invoice_date,
        )
    except ClientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RoundingToleranceExceeded as e:
        raise HTTPException(status_code=422, detail=str(e))

    return PreflightResponse(
        client_id=request.client_id,
        status=result.status,
        invoice=result.invoice.to_dict() if result.invoice else None,
        report=result.report.model_dump(mode="json") if result.report else None,
    )


@router.post("/markup-preview", response_model=MarkupPreviewResponse)
async def markup_preview(request: MarkupPreviewRequest) -> MarkupPreviewResponse:
    """Which rule matches a context and the markup it yields."""
    rules = get_rules_for_client(request.client_id, db_path=get_settings().db_path)
    result, candidates = preview_markup(
        rules,
        request.client_id,
        request.billing_category,
        request.fee_type,
        request.base_amount,
        service_tier=request.service_tier,
        weight_oz=request.weight_oz,
        charge_date=request.charge_date,
    )
    return MarkupPreviewResponse(
        rule_id=result.rule_id,
        rule_name=result.rule_name,
        markup_exact=str(result.markup_exact),
        markup_amount=str(result.markup_amount),
        markup_percentage=str(result.markup_percentage),
        billed_amount=str(round_money(to_decimal(request.base_amount) + result.markup_amount)),
        candidates=[r.name for r in candidates],
    )


@router.get("/unattributed", response_model=UnattributedResponse)
async def unattributed(
    reference_type: Optional[str] = Query(None, description="Only this platform reference type"),
) -> UnattributedResponse:
    """Attribution gaps grouped by reference type and reason."""
    groups = summarize_unattributed(get_settings().db_path)
    if reference_type:
        groups = [g for g in groups if g["platform_reference_type"] == reference_type]
    return UnattributedResponse(
        total=sum(g["count"] for g in groups),
        groups=[UnattributedGroup(**g) for g in groups],
    )
