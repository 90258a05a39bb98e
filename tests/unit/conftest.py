"""Pytest fixtures for unit tests.

In-memory stand-ins for the PostgreSQL stores, the candidate roster and the
Redis notifier, so the aggregation engine and the API can be exercised
without any running service.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import pytest

from votecast.shared.exceptions import RosterUnavailable, TransientStoreError
from votecast.shared.models import (
    ElectionChoice,
    ElectionResult,
    VoteState,
    VoteStateChange,
)


class InMemoryResultStore:
    """Result store with optimistic concurrency.

    Each read-modify-write yields between read and write. The write is only
    accepted when no other write landed on the same election in the meantime,
    otherwise it is retried, like a serialization failure.
    """

    def __init__(self, failing_elections: Set[str] = None):
        self.results: Dict[str, ElectionResult] = {}
        self.versions: Dict[str, int] = {}
        self.processed: Set[tuple] = set()
        self.failing_elections = set(failing_elections or ())
        self.conflicts = 0

    async def update_result(self, election_id, compute, change_id=None):
        if election_id in self.failing_elections:
            raise TransientStoreError(f"store down for {election_id}")

        while True:
            if change_id is not None and (change_id, election_id) in self.processed:
                return None

            version = self.versions.get(election_id, 0)
            current = self.results.get(election_id)
            # Round trip to the database
            await asyncio.sleep(0)
            updated = await compute(current)

            if self.versions.get(election_id, 0) != version:
                self.conflicts += 1
                continue

            self.results[election_id] = updated
            self.versions[election_id] = version + 1
            if change_id is not None:
                self.processed.add((change_id, election_id))
            return updated

    async def get_result(self, election_id):
        return self.results.get(election_id)


class FakeRoster:
    """Roster returning fixed candidate ids per election."""

    def __init__(self, rosters: Dict[str, List[str]] = None):
        self.rosters = rosters or {}
        self.calls: List[str] = []

    async def list_candidate_ids(self, election_id):
        self.calls.append(election_id)
        return set(self.rosters.get(election_id, ()))


class FailingRoster:
    """Roster that is always unreachable, or raises ``error`` when given."""

    def __init__(self, error: Exception = None):
        self.error = error

    async def list_candidate_ids(self, election_id):
        if self.error is not None:
            raise self.error
        raise RosterUnavailable(f"registry timeout for {election_id}")


class RecordingNotifier:
    """Collects published results."""

    def __init__(self, fail: bool = False):
        self.published: List[ElectionResult] = []
        self.fail = fail

    async def publish_result(self, result):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append(result)
        return 1


class InMemoryVoteDatabase:
    """The subset of the API database used by the endpoints, kept in memory."""

    def __init__(self, candidates: Dict[str, List[str]] = None):
        self.candidates = candidates or {}
        self.vote_states: Dict[str, VoteState] = {}
        self.changes: List[VoteStateChange] = []
        self.published: Set[int] = set()
        self.results: Dict[str, ElectionResult] = {}
        self.unavailable = False

    def _check(self):
        if self.unavailable:
            raise TransientStoreError("database unavailable")

    async def get_vote_state(self, user_id):
        self._check()
        return self.vote_states.get(user_id) or VoteState.empty(user_id)

    async def mutate_vote_state(self, user_id, election_id, mutation):
        self._check()
        before = self.vote_states.get(user_id)
        current = before or VoteState.empty(user_id)
        entry = current.choice_for(election_id)
        replacement = mutation(entry, now=datetime.now(timezone.utc))
        if replacement == entry:
            return current, None

        after = current.with_choice(election_id, replacement)
        self.vote_states[user_id] = after
        change = VoteStateChange(
            change_id=len(self.changes) + 1,
            user_id=user_id,
            before=before,
            after=after,
            occurred_at=datetime.now(timezone.utc),
        )
        self.changes.append(change)
        return after, change

    async def mark_change_published(self, change_id):
        self._check()
        self.published.add(change_id)

    async def has_unpublished_changes_before(self, user_id, change_id):
        self._check()
        return any(
            c.user_id == user_id and c.change_id < change_id and c.change_id not in self.published
            for c in self.changes
        )

    async def fetch_unpublished_changes(self, older_than_seconds, limit):
        self._check()
        pending = [c for c in self.changes if c.change_id not in self.published]
        return pending[:limit]

    async def candidate_exists(self, election_id, candidate_id):
        self._check()
        return candidate_id in self.candidates.get(election_id, ())

    async def get_results(self, election_id):
        self._check()
        if election_id in self.results:
            return self.results[election_id]
        return ElectionResult.zero(election_id, self.candidates.get(election_id, ()))

    async def get_elections(self):
        self._check()
        return [
            {
                'id': election_id,
                'title': f"Election {election_id}",
                'description': None,
                'start_date': None,
                'end_date': None,
                'is_voting_period': True,
            }
            for election_id in sorted(self.candidates)
        ]

    async def get_candidates(self, election_id):
        self._check()
        return [
            {'id': c, 'election_id': election_id, 'name': c.title(), 'description': None, 'image_url': None}
            for c in self.candidates.get(election_id, ())
        ]

    async def check_health(self):
        return not self.unavailable


class FakePublisher:
    """Change publisher that records or drops messages."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[VoteStateChange] = []

    async def publish_change(self, change):
        if not self.succeed:
            return False
        self.sent.append(change)
        return True

    async def check_health(self):
        return self.succeed


class FakeRedis:
    """Records pub/sub publishes."""

    def __init__(self):
        self.messages: List[tuple] = []

    async def publish(self, channel, message):
        self.messages.append((channel, message))
        return 0

    async def ping(self):
        return True


@pytest.fixture
def result_store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
def roster() -> FakeRoster:
    return FakeRoster({
        'mayor': ['alice', 'bob', 'carol'],
        'council': ['dan', 'eve'],
    })


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_state():
    """Build a VoteState from ``{election_id: (candidate_id, [dislikes])}``."""
    def _make(user_id: str, elections: Optional[dict] = None) -> VoteState:
        stamp = datetime(2025, 3, 1, tzinfo=timezone.utc)
        return VoteState(
            user_id=user_id,
            elections={
                election_id: ElectionChoice(
                    candidate_id=candidate_id,
                    disliked_candidates=frozenset(dislikes),
                    created_at=stamp,
                    updated_at=stamp,
                )
                for election_id, (candidate_id, dislikes) in (elections or {}).items()
            },
        )

    return _make
