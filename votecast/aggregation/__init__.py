"""Aggregation service: applies vote-state changes to cached election results."""

from .engine import (
    AggregationEngine,
    AggregationReport,
    ElectionDelta,
    apply_delta,
    compute_affected_elections,
)

__all__ = [
    'AggregationEngine',
    'AggregationReport',
    'ElectionDelta',
    'apply_delta',
    'compute_affected_elections',
]
