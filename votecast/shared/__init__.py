"""
Shared utilities and models for the election forecast platform.

This package contains common code used across all services:
- Data models (VoteState, ElectionChoice, ElectionResult, CandidateResult)
- Percentage and timestamp helpers
- Exception hierarchy
- Redis and RabbitMQ naming constants
"""

from .models import (
    ElectionChoice,
    VoteState,
    VoteStateChange,
    CandidateResult,
    ElectionResult,
    compute_percentage,
    get_current_timestamp,
    parse_timestamp,
    format_timestamp,
    get_redis_channel,
    REDIS_CHANNELS,
    RABBITMQ_CONFIG,
)
from .exceptions import (
    VotecastError,
    TransientStoreError,
    MutationConflict,
    RosterUnavailable,
    DislikeRejected,
    UnknownCandidate,
)

__all__ = [
    'ElectionChoice',
    'VoteState',
    'VoteStateChange',
    'CandidateResult',
    'ElectionResult',
    'compute_percentage',
    'get_current_timestamp',
    'parse_timestamp',
    'format_timestamp',
    'get_redis_channel',
    'REDIS_CHANNELS',
    'RABBITMQ_CONFIG',
    'VotecastError',
    'TransientStoreError',
    'MutationConflict',
    'RosterUnavailable',
    'DislikeRejected',
    'UnknownCandidate',
]
