"""
Shared data models and utilities for the election forecast platform.

This module contains:
- ElectionChoice / VoteState: the per-user vote-state document
- CandidateResult / ElectionResult: the per-election cached aggregate
- Percentage rounding and timestamp helpers
- Redis channel and RabbitMQ naming constants
"""

import json
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, FrozenSet, Iterable


def get_current_timestamp() -> datetime:
    """
    Get current UTC time.

    Returns:
        datetime: timezone-aware UTC timestamp
    """
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through)."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO 8601."""
    return value.isoformat() if value is not None else None


def compute_percentage(part: int, total: int) -> float:
    """
    Share of ``part`` in ``total`` with one decimal place.

    Rounds half up (``floor(x * 1000 + 0.5) / 10``), so 1/3 gives 33.3 and
    2/3 gives 66.7.

    Args:
        part: Count for one candidate
        total: Total over all candidates

    Returns:
        float: Percentage between 0 and 100, 0 when total is not positive
    """
    if total <= 0:
        return 0
    return math.floor(part / total * 1000 + 0.5) / 10


@dataclass(frozen=True)
class ElectionChoice:
    """
    One user's choice for one election.

    Attributes:
        candidate_id: Currently chosen candidate, None when no active vote
        disliked_candidates: Candidates flagged as unwanted
        created_at: When the entry was first written
        updated_at: When the entry was last written
    """
    candidate_id: Optional[str] = None
    disliked_candidates: FrozenSet[str] = frozenset()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        """True when the entry carries neither a vote nor a dislike."""
        return self.candidate_id is None and not self.disliked_candidates

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            'disliked_candidates': sorted(self.disliked_candidates),
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at),
        }
        if self.candidate_id is not None:
            data['candidate_id'] = self.candidate_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ElectionChoice':
        """Create ElectionChoice from dictionary."""
        dislikes = data.get('disliked_candidates') or []
        return cls(
            candidate_id=data.get('candidate_id') or None,
            disliked_candidates=frozenset(dislikes),
            created_at=parse_timestamp(data.get('created_at')),
            updated_at=parse_timestamp(data.get('updated_at')),
        )


@dataclass(frozen=True)
class VoteState:
    """
    Per-user record of current candidate choices and dislike marks.

    Attributes:
        user_id: Owning user
        elections: Mapping of election id to ElectionChoice
    """
    user_id: str
    elections: Dict[str, ElectionChoice] = field(default_factory=dict)

    def choice_for(self, election_id: str) -> Optional[ElectionChoice]:
        """Return the entry for an election, or None when absent."""
        return self.elections.get(election_id)

    def with_choice(self, election_id: str, choice: Optional[ElectionChoice]) -> 'VoteState':
        """
        Return a copy with one election entry replaced.

        Passing None (or an empty entry) removes the election from the mapping.
        """
        elections = dict(self.elections)
        if choice is None or choice.is_empty:
            elections.pop(election_id, None)
        else:
            elections[election_id] = choice
        return replace(self, elections=elections)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'user_id': self.user_id,
            'elections': {
                election_id: choice.to_dict()
                for election_id, choice in self.elections.items()
            },
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VoteState':
        """Create VoteState from dictionary."""
        elections = data.get('elections') or {}
        return cls(
            user_id=data['user_id'],
            elections={
                election_id: ElectionChoice.from_dict(choice)
                for election_id, choice in elections.items()
                if choice
            },
        )

    @classmethod
    def empty(cls, user_id: str) -> 'VoteState':
        return cls(user_id=user_id, elections={})


@dataclass(frozen=True)
class CandidateResult:
    """Aggregated vote and dislike statistics for one candidate."""
    count: int = 0
    percentage: float = 0
    dislike_count: int = 0
    dislike_percentage: float = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary; dislike fields only when there are dislikes."""
        data = {'count': self.count, 'percentage': self.percentage}
        if self.dislike_count > 0:
            data['dislike_count'] = self.dislike_count
            data['dislike_percentage'] = self.dislike_percentage
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CandidateResult':
        """Create CandidateResult from dictionary."""
        return cls(
            count=int(data.get('count') or 0),
            percentage=data.get('percentage') or 0,
            dislike_count=int(data.get('dislike_count') or 0),
            dislike_percentage=data.get('dislike_percentage') or 0,
        )


@dataclass(frozen=True)
class ElectionResult:
    """
    Per-election cached aggregate.

    Attributes:
        election_id: Election identifier
        total_votes: Number of users with an active vote
        total_dislike_marks: Number of dislike marks across all candidates
        candidates: Mapping of candidate id to CandidateResult
        last_updated: Time of the last successful aggregation write
    """
    election_id: str
    total_votes: int = 0
    total_dislike_marks: int = 0
    candidates: Dict[str, CandidateResult] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'election_id': self.election_id,
            'total_votes': self.total_votes,
            'total_dislike_marks': self.total_dislike_marks,
            'candidates': {
                candidate_id: result.to_dict()
                for candidate_id, result in self.candidates.items()
            },
            'last_updated': format_timestamp(self.last_updated),
        }

    def to_json(self) -> str:
        """Convert to JSON string for pub/sub notifications."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ElectionResult':
        """Create ElectionResult from dictionary."""
        return cls(
            election_id=data['election_id'],
            total_votes=int(data.get('total_votes') or 0),
            total_dislike_marks=int(data.get('total_dislike_marks') or 0),
            candidates={
                candidate_id: CandidateResult.from_dict(result)
                for candidate_id, result in sorted((data.get('candidates') or {}).items())
            },
            last_updated=parse_timestamp(data.get('last_updated')),
        )

    @classmethod
    def zero(cls, election_id: str, candidate_ids: Iterable[str] = ()) -> 'ElectionResult':
        """
        Zero-valued result, zero-filled with the given candidates.

        Used when no aggregate exists yet so readers never get None.
        """
        return cls(
            election_id=election_id,
            total_votes=0,
            total_dislike_marks=0,
            candidates={candidate_id: CandidateResult() for candidate_id in candidate_ids},
            last_updated=None,
        )


@dataclass(frozen=True)
class VoteStateChange:
    """
    One committed write of a user's vote state, as delivered to aggregation.

    Attributes:
        change_id: Outbox sequence number, used to drop redeliveries
        user_id: Owner of the vote state
        before: Image before the write (None when the record was created)
        after: Image after the write
        occurred_at: Commit time of the write
    """
    change_id: Optional[int]
    user_id: str
    before: Optional[VoteState]
    after: Optional[VoteState]
    occurred_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the change message body."""
        return {
            'change_id': self.change_id,
            'user_id': self.user_id,
            'before': self.before.to_dict() if self.before is not None else None,
            'after': self.after.to_dict() if self.after is not None else None,
            'occurred_at': format_timestamp(self.occurred_at),
        }

    def to_json(self) -> str:
        """Convert to JSON string for message queue."""
        return json.dumps(self.to_dict())


# Redis pub/sub channels for live updates
REDIS_CHANNELS = {
    'election_results': 'election_results:{}',  # ElectionResult JSON per election
    'vote_states': 'vote_states:{}',            # VoteState JSON per user
}


def get_redis_channel(channel_type: str, *args) -> str:
    """
    Get formatted Redis channel name.

    Args:
        channel_type: Type of channel from REDIS_CHANNELS
        *args: Arguments to format into the channel name

    Returns:
        str: Formatted channel name
    """
    template = REDIS_CHANNELS.get(channel_type)
    if template and '{}' in template:
        return template.format(*args)
    return template


# RabbitMQ exchange, queue and routing key for vote-state changes
RABBITMQ_CONFIG = {
    'exchange': 'vote_states.exchange',
    'queues': {
        'aggregation': 'vote_states.aggregation',
    },
    'routing_keys': {
        'changed': 'vote_state.changed',
    }
}
