"""Prometheus metrics for the aggregation service."""
from prometheus_client import Counter, Gauge, Histogram

changes_consumed_total = Counter(
    'vote_state_changes_consumed_total',
    'Total number of vote-state change messages consumed',
    ['status']
)

elections_aggregated_total = Counter(
    'elections_aggregated_total',
    'Total number of per-election aggregation transactions',
    ['status']
)

aggregation_errors = Counter(
    'aggregation_errors_total',
    'Total number of aggregation errors',
    ['error_type']
)

roster_fallbacks_total = Counter(
    'roster_fallbacks_total',
    'Aggregations that ran with a degraded zero-fill because the roster was unavailable'
)

count_clamps_total = Counter(
    'aggregation_count_clamps_total',
    'Counts that would have gone negative and were clamped',
    ['field']
)

current_total_votes = Gauge(
    'election_total_votes',
    'Current total votes per election',
    ['election_id']
)

change_processing_duration = Histogram(
    'change_processing_duration_seconds',
    'Time taken to process one vote-state change',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)
