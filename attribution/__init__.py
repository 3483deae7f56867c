"""
Attribution Package

Maps platform transactions to the client that owns them.

Usage:
    from attribution import AttributionRepository, AttributionResolver

    resolver = AttributionResolver(AttributionRepository(db_path))
    results = resolver.resolve_batch(transactions)
"""

from attribution.models import UNATTRIBUTED_METHODS, AttributionMethod, AttributionResult
from attribution.repository import AttributionRepository
from attribution.resolver import (
    AttributionResolver,
    parse_inventory_id,
    parse_order_number,
    parse_shipment_id,
    summarize_results,
)

__all__ = [
    "UNATTRIBUTED_METHODS",
    "AttributionMethod",
    "AttributionResult",
    "AttributionRepository",
    "AttributionResolver",
    "parse_inventory_id",
    "parse_order_number",
    "parse_shipment_id",
    "summarize_results",
]
