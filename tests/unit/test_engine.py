"""Unit tests for incremental vote aggregation."""

import asyncio
import random
from collections import Counter
from functools import partial

import pytest

from votecast.aggregation.engine import (
    AggregationEngine,
    ElectionDelta,
    apply_delta,
    compute_affected_elections,
)
from votecast.ingestion_api.mutations import cancel_vote, submit_vote, toggle_dislike
from votecast.shared.exceptions import DislikeRejected
from votecast.shared.models import CandidateResult, ElectionResult

from .conftest import FailingRoster, InMemoryResultStore, InMemoryVoteDatabase, RecordingNotifier


class TestComputeAffectedElections:
    """Diffing two images of a vote state."""

    def test_identical_images_affect_nothing(self, make_state):
        """Test: Re-applying the same image is a no-op."""
        state = make_state('u1', {'mayor': ('alice', ['bob'])})

        assert compute_affected_elections(state, state) == []

    def test_create_affects_every_election(self, make_state):
        """Test: A first write touches each election it mentions."""
        after = make_state('u1', {'mayor': ('alice', []), 'council': (None, ['dan'])})

        deltas = compute_affected_elections(None, after)

        assert [d.election_id for d in deltas] == ['council', 'mayor']
        assert deltas[0].added_dislikes == frozenset({'dan'})
        assert deltas[1].after_candidate == 'alice'

    def test_unchanged_election_left_out(self, make_state):
        """Test: Only elections whose pick or dislikes differ are affected."""
        before = make_state('u1', {'mayor': ('alice', []), 'council': ('dan', [])})
        after = make_state('u1', {'mayor': ('bob', []), 'council': ('dan', [])})

        deltas = compute_affected_elections(before, after)

        assert [d.election_id for d in deltas] == ['mayor']
        assert deltas[0].before_candidate == 'alice'
        assert deltas[0].after_candidate == 'bob'

    def test_delete_affects_every_election(self, make_state):
        """Test: Removing the record withdraws everything."""
        before = make_state('u1', {'mayor': ('alice', ['bob'])})

        (delta,) = compute_affected_elections(before, None)

        assert delta.after_candidate is None
        assert delta.removed_dislikes == frozenset({'bob'})

    def test_both_images_missing_is_an_error(self):
        """Test: A change needs at least one image."""
        with pytest.raises(ValueError):
            compute_affected_elections(None, None)


class TestApplyDelta:
    """Pure delta application."""

    def test_clamps_negative_totals(self):
        """Test: Drift never produces negative totals."""
        current = ElectionResult('mayor', total_votes=0, total_dislike_marks=0)
        delta = ElectionDelta('mayor', before_candidate='alice', after_candidate=None,
                              before_dislikes=frozenset({'bob'}))

        result = apply_delta(current, delta, roster_ids=['alice', 'bob'])

        assert result.total_votes == 0
        assert result.total_dislike_marks == 0
        assert all(c.count >= 0 and c.dislike_count >= 0 for c in result.candidates.values())

    def test_zero_fill_from_roster(self):
        """Test: Every rostered candidate appears even with no votes."""
        delta = ElectionDelta('mayor', before_candidate=None, after_candidate='alice')

        result = apply_delta(None, delta, roster_ids=['alice', 'bob', 'carol'])

        assert list(result.candidates) == ['alice', 'bob', 'carol']
        assert result.candidates['bob'] == CandidateResult(count=0, percentage=0)

    def test_without_roster_keeps_known_candidates(self):
        """Test: Degraded zero-fill lists only candidates with counts."""
        delta = ElectionDelta('mayor', before_candidate=None, after_candidate='alice')

        result = apply_delta(None, delta, roster_ids=None)

        assert list(result.candidates) == ['alice']


@pytest.mark.asyncio
class TestAggregationEngine:
    """Change handling against in-memory stores."""

    async def test_first_vote_zero_fills_roster(self, result_store, roster, notifier, make_state):
        """Test: First vote gives 100% to the pick and 0 to the rest of the roster."""
        engine = AggregationEngine(result_store, roster, notifier)

        report = await engine.handle_change(None, make_state('u1', {'mayor': ('alice', [])}), change_id=1)

        result = result_store.results['mayor']
        assert result.total_votes == 1
        assert result.candidates['alice'] == CandidateResult(count=1, percentage=100.0)
        assert result.candidates['bob'] == CandidateResult()
        assert result.candidates['carol'] == CandidateResult()
        assert report.updated == [result]
        assert notifier.published == [result]

    async def test_vote_then_switch(self, result_store, roster, make_state):
        """Test: Switching moves the count without changing the total."""
        engine = AggregationEngine(result_store, roster)
        s1 = make_state('u1', {'mayor': ('alice', [])})
        s2 = make_state('u1', {'mayor': ('bob', [])})

        await engine.handle_change(None, s1, change_id=1)
        await engine.handle_change(s1, s2, change_id=2)

        result = result_store.results['mayor']
        assert result.total_votes == 1
        assert result.candidates['alice'].count == 0
        assert result.candidates['bob'] == CandidateResult(count=1, percentage=100.0)

    async def test_vote_then_cancel(self, result_store, roster, make_state):
        """Test: Cancelling returns the election to zero."""
        engine = AggregationEngine(result_store, roster)
        s1 = make_state('u1', {'mayor': ('alice', [])})
        s2 = make_state('u1', {})

        await engine.handle_change(None, s1, change_id=1)
        await engine.handle_change(s1, s2, change_id=2)

        result = result_store.results['mayor']
        assert result.total_votes == 0
        assert all(c == CandidateResult() for c in result.candidates.values())
        assert set(result.candidates) == {'alice', 'bob', 'carol'}

    async def test_dislike_then_vote_same_candidate(self, result_store, roster, make_state):
        """Test: Voting for a disliked candidate moves the mark into a vote."""
        engine = AggregationEngine(result_store, roster)
        s1 = make_state('u1', {'mayor': (None, ['bob'])})
        s2 = make_state('u1', {'mayor': ('bob', [])})

        await engine.handle_change(None, s1, change_id=1)
        after_dislike = result_store.results['mayor']
        assert after_dislike.total_dislike_marks == 1
        assert after_dislike.candidates['bob'].dislike_percentage == 100.0

        await engine.handle_change(s1, s2, change_id=2)

        result = result_store.results['mayor']
        assert result.total_votes == 1
        assert result.total_dislike_marks == 0
        assert result.candidates['bob'] == CandidateResult(count=1, percentage=100.0)

    async def test_three_way_split_rounds_to_one_decimal(self, result_store, roster, make_state):
        """Test: Three voters on three candidates give 33.3% each."""
        engine = AggregationEngine(result_store, roster)

        for change_id, (user_id, candidate_id) in enumerate(
            [('u1', 'alice'), ('u2', 'bob'), ('u3', 'carol')], start=1
        ):
            await engine.handle_change(
                None, make_state(user_id, {'mayor': (candidate_id, [])}), change_id=change_id
            )

        result = result_store.results['mayor']
        assert result.total_votes == 3
        assert [c.percentage for c in result.candidates.values()] == [33.3, 33.3, 33.3]

    async def test_roster_failure_degrades_zero_fill(self, result_store, make_state):
        """Test: An unreachable roster still produces a result for known candidates."""
        engine = AggregationEngine(result_store, FailingRoster())

        report = await engine.handle_change(None, make_state('u1', {'mayor': ('alice', [])}), change_id=1)

        assert report.failed == []
        assert list(result_store.results['mayor'].candidates) == ['alice']

    async def test_roster_error_does_not_block_other_elections(self, result_store, make_state):
        """Test: An unexpected roster error degrades zero-fill for every election."""
        engine = AggregationEngine(result_store, FailingRoster(AttributeError("pool not initialized")))
        after = make_state('u1', {'mayor': ('alice', []), 'council': ('dan', [])})

        report = await engine.handle_change(None, after, change_id=1)

        assert report.failed == []
        assert sorted(r.election_id for r in report.updated) == ['council', 'mayor']
        assert list(result_store.results['council'].candidates) == ['dan']

    async def test_failure_in_one_election_does_not_block_others(self, roster, make_state):
        """Test: A store failure on one election leaves the other updated."""
        store = InMemoryResultStore(failing_elections={'council'})
        engine = AggregationEngine(store, roster)
        after = make_state('u1', {'mayor': ('alice', []), 'council': ('dan', [])})

        report = await engine.handle_change(None, after, change_id=1)

        assert report.failed == ['council']
        assert [r.election_id for r in report.updated] == ['mayor']
        assert 'council' not in store.results
        assert store.results['mayor'].total_votes == 1

    async def test_redelivered_change_is_skipped(self, result_store, roster, make_state):
        """Test: Applying the same change id twice counts it once."""
        engine = AggregationEngine(result_store, roster)
        after = make_state('u1', {'mayor': ('alice', [])})

        await engine.handle_change(None, after, change_id=42)
        report = await engine.handle_change(None, after, change_id=42)

        assert report.duplicates == ['mayor']
        assert result_store.results['mayor'].total_votes == 1

    async def test_notifier_failure_is_not_fatal(self, result_store, roster, make_state):
        """Test: A failed live update does not undo or fail the aggregation."""
        engine = AggregationEngine(result_store, roster, RecordingNotifier(fail=True))

        report = await engine.handle_change(None, make_state('u1', {'mayor': ('alice', [])}), change_id=1)

        assert report.failed == []
        assert result_store.results['mayor'].total_votes == 1

    async def test_no_op_change_touches_nothing(self, result_store, roster, make_state):
        """Test: A write that changes no election runs no transaction."""
        engine = AggregationEngine(result_store, roster)
        state = make_state('u1', {'mayor': ('alice', [])})

        report = await engine.handle_change(state, state, change_id=1)

        assert report.affected_count == 0
        assert result_store.results == {}

    async def test_concurrent_changes_conserve_counts(self, result_store, roster, make_state):
        """Test: Concurrent votes on one election lose no updates."""
        engine = AggregationEngine(result_store, roster)
        candidates = ['alice', 'bob', 'carol']

        await asyncio.gather(*[
            engine.handle_change(
                None,
                make_state(f"u{i}", {'mayor': (candidates[i % 3], [candidates[(i + 1) % 3]])}),
                change_id=i
            )
            for i in range(60)
        ])

        result = result_store.results['mayor']
        assert result.total_votes == 60
        assert sum(c.count for c in result.candidates.values()) == 60
        assert result.total_dislike_marks == 60
        assert sum(c.dislike_count for c in result.candidates.values()) == 60
        assert {c: r.count for c, r in result.candidates.items()} == {'alice': 20, 'bob': 20, 'carol': 20}
        assert result_store.conflicts > 0


async def _random_history(seed: int, users: int, steps: int) -> InMemoryVoteDatabase:
    """Run seeded random votes, switches, cancels and dislikes through the mutators."""
    rng = random.Random(seed)
    database = InMemoryVoteDatabase()
    candidates = {'mayor': ['alice', 'bob', 'carol'], 'council': ['dan', 'eve']}

    for _ in range(steps):
        user_id = f"u{rng.randrange(users)}"
        election_id = rng.choice(sorted(candidates))
        candidate_id = rng.choice(candidates[election_id])
        action = rng.choice(['vote', 'vote', 'cancel', 'dislike'])
        if action == 'vote':
            mutation = partial(submit_vote, candidate_id=candidate_id)
        elif action == 'cancel':
            mutation = cancel_vote
        else:
            mutation = partial(toggle_dislike, candidate_id=candidate_id, election_id=election_id)
        try:
            await database.mutate_vote_state(user_id, election_id, mutation)
        except DislikeRejected:
            pass

    return database


async def test_mixed_histories_conserve_counts(roster):
    """Test: After any mix of writes, results match the users' current vote states."""
    database = await _random_history(seed=20250302, users=10, steps=400)
    store = InMemoryResultStore()
    engine = AggregationEngine(store, roster)

    # Each user's changes in order, users interleaved
    async def replay(user_id):
        for change in database.changes:
            if change.user_id == user_id:
                await engine.handle_change(change.before, change.after, change_id=change.change_id)

    await asyncio.gather(*[replay(user_id) for user_id in sorted(database.vote_states)])

    for election_id in ('mayor', 'council'):
        picks = Counter()
        dislikes = Counter()
        for state in database.vote_states.values():
            entry = state.choice_for(election_id)
            if entry is None:
                continue
            if entry.candidate_id:
                picks[entry.candidate_id] += 1
            dislikes.update(entry.disliked_candidates)

        result = store.results[election_id]
        assert result.total_votes == sum(picks.values())
        assert result.total_votes == sum(c.count for c in result.candidates.values())
        assert result.total_dislike_marks == sum(dislikes.values())
        for candidate_id, candidate in result.candidates.items():
            assert candidate.count == picks[candidate_id]
            assert candidate.dislike_count == dislikes[candidate_id]


async def test_disordered_deliveries_never_go_negative(roster):
    """Test: Shuffled and repeated changes without ids never drive a count below zero."""
    database = await _random_history(seed=20250303, users=6, steps=200)
    deliveries = database.changes + database.changes[::3]
    random.Random(7).shuffle(deliveries)
    store = InMemoryResultStore()
    engine = AggregationEngine(store, roster)

    for change in deliveries:
        await engine.handle_change(change.before, change.after)

        for result in store.results.values():
            assert result.total_votes >= 0
            assert result.total_dislike_marks >= 0
            assert all(c.count >= 0 and c.dislike_count >= 0 for c in result.candidates.values())
