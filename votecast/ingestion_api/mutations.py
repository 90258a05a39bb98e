"""
Vote-state mutators.

Each mutator takes the current per-election entry (or None) and returns the
full replacement entry (or None to drop it). They never touch storage; the
vote-state store runs them inside the user's read-modify-write transaction.
"""
from datetime import datetime
from typing import Optional

from ..shared.exceptions import DislikeRejected
from ..shared.models import ElectionChoice


def submit_vote(
    entry: Optional[ElectionChoice],
    candidate_id: str,
    now: datetime,
    election_id: str = None
) -> ElectionChoice:
    """
    Vote for a candidate.

    The chosen candidate is removed from the dislike set, ``created_at`` is
    kept when the entry already existed. Re-voting for the current pick
    returns the entry untouched, without restamping ``updated_at``, so the
    store sees no change and emits nothing.
    """
    if entry is None:
        return ElectionChoice(
            candidate_id=candidate_id,
            disliked_candidates=frozenset(),
            created_at=now,
            updated_at=now,
        )
    if entry.candidate_id == candidate_id and candidate_id not in entry.disliked_candidates:
        return entry
    return ElectionChoice(
        candidate_id=candidate_id,
        disliked_candidates=entry.disliked_candidates - {candidate_id},
        created_at=entry.created_at or now,
        updated_at=now,
    )


def cancel_vote(
    entry: Optional[ElectionChoice],
    now: datetime,
    election_id: str = None
) -> Optional[ElectionChoice]:
    """
    Withdraw the current vote.

    Dislikes survive the cancellation; an entry left with nothing is dropped.
    """
    if entry is None:
        return None
    if entry.candidate_id is None:
        return entry
    if not entry.disliked_candidates:
        return None
    return ElectionChoice(
        candidate_id=None,
        disliked_candidates=entry.disliked_candidates,
        created_at=entry.created_at,
        updated_at=now,
    )


def toggle_dislike(
    entry: Optional[ElectionChoice],
    candidate_id: str,
    now: datetime,
    election_id: str = None
) -> Optional[ElectionChoice]:
    """
    Flip the dislike mark on a candidate.

    Raises:
        DislikeRejected: If the candidate is the user's current pick
    """
    if entry is None:
        entry = ElectionChoice(created_at=now, updated_at=now)

    if entry.candidate_id == candidate_id:
        raise DislikeRejected(election_id, candidate_id)

    if candidate_id in entry.disliked_candidates:
        dislikes = entry.disliked_candidates - {candidate_id}
    else:
        dislikes = entry.disliked_candidates | {candidate_id}

    updated = ElectionChoice(
        candidate_id=entry.candidate_id,
        disliked_candidates=dislikes,
        created_at=entry.created_at or now,
        updated_at=now,
    )
    return None if updated.is_empty else updated
