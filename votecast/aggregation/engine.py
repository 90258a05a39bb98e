"""
Incremental vote aggregation.

Turns a vote-state change (before-image, after-image) into per-election
deltas and applies each delta to that election's cached result inside its
own store transaction. The stored counts are trusted as ground truth: one
change costs O(1) work per affected election, never a rescan of all voters.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Optional, List, Dict, FrozenSet, Iterable, Set, Any

from ..shared.exceptions import RosterUnavailable, TransientStoreError
from ..shared.models import (
    VoteState,
    CandidateResult,
    ElectionResult,
    compute_percentage,
    get_current_timestamp,
)
from .metrics import (
    elections_aggregated_total,
    aggregation_errors,
    roster_fallbacks_total,
    count_clamps_total,
    current_total_votes,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElectionDelta:
    """Difference between the before- and after-image for one election."""
    election_id: str
    before_candidate: Optional[str]
    after_candidate: Optional[str]
    before_dislikes: FrozenSet[str] = frozenset()
    after_dislikes: FrozenSet[str] = frozenset()

    @property
    def added_dislikes(self) -> FrozenSet[str]:
        return self.after_dislikes - self.before_dislikes

    @property
    def removed_dislikes(self) -> FrozenSet[str]:
        return self.before_dislikes - self.after_dislikes

    @property
    def vote_changed(self) -> bool:
        return self.before_candidate != self.after_candidate

    def to_dict(self) -> Dict[str, Any]:
        """Compact form for logging."""
        return {
            'election_id': self.election_id,
            'before_candidate': self.before_candidate,
            'after_candidate': self.after_candidate,
            'added_dislikes': sorted(self.added_dislikes),
            'removed_dislikes': sorted(self.removed_dislikes),
        }


def compute_affected_elections(
    before: Optional[VoteState],
    after: Optional[VoteState]
) -> List[ElectionDelta]:
    """
    Diff two images of one user's vote state.

    An election is affected when its chosen candidate differs or its dislike
    set differs. Unaffected elections are left out entirely.

    Args:
        before: Vote state before the write (None on create)
        after: Vote state after the write (None on delete)

    Returns:
        List of ElectionDelta ordered by election id

    Raises:
        ValueError: If both images are absent
    """
    if before is None and after is None:
        raise ValueError("A vote-state change needs at least one image")

    before_elections = before.elections if before is not None else {}
    after_elections = after.elections if after is not None else {}

    deltas = []
    for election_id in sorted(set(before_elections) | set(after_elections)):
        before_choice = before_elections.get(election_id)
        after_choice = after_elections.get(election_id)

        before_candidate = before_choice.candidate_id if before_choice else None
        after_candidate = after_choice.candidate_id if after_choice else None
        before_dislikes = before_choice.disliked_candidates if before_choice else frozenset()
        after_dislikes = after_choice.disliked_candidates if after_choice else frozenset()

        if before_candidate == after_candidate and before_dislikes == after_dislikes:
            continue

        deltas.append(ElectionDelta(
            election_id=election_id,
            before_candidate=before_candidate,
            after_candidate=after_candidate,
            before_dislikes=frozenset(before_dislikes),
            after_dislikes=frozenset(after_dislikes),
        ))

    return deltas


def _decrement(counters: Dict[str, int], candidate_id: str) -> bool:
    """Decrement one counter, dropping it at zero. False if there was nothing to take."""
    if not counters.get(candidate_id):
        return False
    counters[candidate_id] -= 1
    if counters[candidate_id] <= 0:
        del counters[candidate_id]
    return True


def apply_delta(
    current: Optional[ElectionResult],
    delta: ElectionDelta,
    roster_ids: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None
) -> ElectionResult:
    """
    Apply one election delta to the stored aggregate.

    Args:
        current: Stored result, or None when the election has no result yet
        delta: Change to apply
        roster_ids: Registered candidate ids for zero-fill; None when the
            registry could not be read
        now: Timestamp for ``last_updated``

    Returns:
        ElectionResult: Complete replacement record
    """
    election_id = delta.election_id
    if current is None:
        current = ElectionResult.zero(election_id)

    counts: Dict[str, int] = {
        candidate_id: result.count for candidate_id, result in current.candidates.items()
    }
    dislike_counts: Dict[str, int] = {
        candidate_id: result.dislike_count
        for candidate_id, result in current.candidates.items()
        if result.dislike_count > 0
    }
    total_votes = current.total_votes
    total_dislike_marks = current.total_dislike_marks

    before, after = delta.before_candidate, delta.after_candidate

    if before and before != after:
        if not _decrement(counts, before):
            logger.warning(
                f"Vote count drift: election={election_id} candidate={before} "
                f"had no count to remove"
            )
        if not after:
            total_votes -= 1

    if not before and after:
        total_votes += 1

    if after and after != before:
        counts[after] = counts.get(after, 0) + 1

    for candidate_id in sorted(delta.added_dislikes):
        dislike_counts[candidate_id] = dislike_counts.get(candidate_id, 0) + 1
        total_dislike_marks += 1

    for candidate_id in sorted(delta.removed_dislikes):
        if _decrement(dislike_counts, candidate_id):
            total_dislike_marks -= 1
        else:
            logger.warning(
                f"Dislike count drift: election={election_id} candidate={candidate_id} "
                f"had no dislike to remove"
            )

    if total_votes < 0:
        logger.warning(f"Clamping total_votes={total_votes} to 0 for election={election_id}")
        count_clamps_total.labels(field='total_votes').inc()
        total_votes = 0

    if total_dislike_marks < 0:
        logger.warning(
            f"Clamping total_dislike_marks={total_dislike_marks} to 0 for election={election_id}"
        )
        count_clamps_total.labels(field='total_dislike_marks').inc()
        total_dislike_marks = 0

    candidate_ids: Set[str] = set(counts) | set(dislike_counts)
    if roster_ids is not None:
        candidate_ids.update(roster_ids)

    candidates = {}
    for candidate_id in sorted(candidate_ids):
        count = counts.get(candidate_id, 0)
        dislike_count = dislike_counts.get(candidate_id, 0)
        candidates[candidate_id] = CandidateResult(
            count=count,
            percentage=compute_percentage(count, total_votes),
            dislike_count=dislike_count,
            dislike_percentage=(
                compute_percentage(dislike_count, total_dislike_marks) if dislike_count > 0 else 0
            ),
        )

    return ElectionResult(
        election_id=election_id,
        total_votes=total_votes,
        total_dislike_marks=total_dislike_marks,
        candidates=candidates,
        last_updated=now or get_current_timestamp(),
    )


@dataclass
class AggregationReport:
    """Outcome of processing one vote-state change."""
    updated: List[ElectionResult] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def affected_count(self) -> int:
        return len(self.updated) + len(self.duplicates) + len(self.failed)


class AggregationEngine:
    """
    Applies vote-state changes to per-election results.

    Collaborators:
        result_store: object with ``async update_result(election_id, compute,
            change_id=None)`` that runs ``compute(current)`` inside one
            transaction, writes its return value, and returns it (or None when
            ``change_id`` was already applied to that election)
        roster: object with ``async list_candidate_ids(election_id)`` raising
            RosterUnavailable on failure
        notifier: optional object with ``async publish_result(result)``
    """

    def __init__(self, result_store, roster, notifier=None):
        self.result_store = result_store
        self.roster = roster
        self.notifier = notifier

    async def handle_change(
        self,
        before: Optional[VoteState],
        after: Optional[VoteState],
        change_id: Optional[int] = None
    ) -> AggregationReport:
        """
        Process one vote-state write.

        Each affected election is updated in its own transaction; a failure
        is logged and does not stop the remaining elections.

        Raises:
            ValueError: If both images are absent
        """
        report = AggregationReport()
        deltas = compute_affected_elections(before, after)
        if not deltas:
            return report

        user_id = (after or before).user_id
        logger.info(
            f"Applying change {change_id} for user={user_id}: "
            f"{len(deltas)} affected election(s)"
        )

        for delta in deltas:
            roster_ids = await self._fetch_roster(delta.election_id)
            try:
                result = await self.result_store.update_result(
                    delta.election_id,
                    partial(self._recompute, delta, roster_ids),
                    change_id=change_id
                )
            except TransientStoreError as e:
                logger.error(
                    f"Aggregation failed for election={delta.election_id} "
                    f"diff={delta.to_dict()}: {e}"
                )
                aggregation_errors.labels(error_type='store').inc()
                elections_aggregated_total.labels(status='failed').inc()
                report.failed.append(delta.election_id)
                continue
            except Exception as e:
                logger.error(
                    f"Unexpected aggregation error for election={delta.election_id} "
                    f"diff={delta.to_dict()}: {e}",
                    exc_info=True
                )
                aggregation_errors.labels(error_type='unexpected').inc()
                elections_aggregated_total.labels(status='failed').inc()
                report.failed.append(delta.election_id)
                continue

            if result is None:
                logger.info(
                    f"Change {change_id} already applied to election={delta.election_id}, skipping"
                )
                elections_aggregated_total.labels(status='duplicate').inc()
                report.duplicates.append(delta.election_id)
                continue

            elections_aggregated_total.labels(status='updated').inc()
            current_total_votes.labels(election_id=delta.election_id).set(result.total_votes)
            report.updated.append(result)
            logger.info(
                f"Updated election={delta.election_id}: total_votes={result.total_votes}, "
                f"total_dislike_marks={result.total_dislike_marks}"
            )
            await self._notify(result)

        return report

    async def _recompute(
        self,
        delta: ElectionDelta,
        roster_ids: Optional[Set[str]],
        current: Optional[ElectionResult]
    ) -> ElectionResult:
        """Transaction body: delta, zero-fill, percentages."""
        return apply_delta(current, delta, roster_ids, get_current_timestamp())

    async def _fetch_roster(self, election_id: str) -> Optional[Set[str]]:
        try:
            return set(await self.roster.list_candidate_ids(election_id))
        except RosterUnavailable as e:
            logger.warning(
                f"Roster unavailable for election={election_id}, "
                f"zero-fill limited to known candidates: {e}"
            )
            roster_fallbacks_total.inc()
            return None
        except Exception as e:
            logger.error(
                f"Roster lookup failed for election={election_id}, "
                f"zero-fill limited to known candidates: {e}",
                exc_info=True
            )
            aggregation_errors.labels(error_type='roster').inc()
            roster_fallbacks_total.inc()
            return None

    async def _notify(self, result: ElectionResult):
        if self.notifier is None:
            return
        try:
            await self.notifier.publish_result(result)
        except Exception as e:
            logger.error(f"Failed to publish result update for election={result.election_id}: {e}")
            aggregation_errors.labels(error_type='notify').inc()
