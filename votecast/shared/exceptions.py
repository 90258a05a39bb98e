"""Exception hierarchy shared by the API and the aggregation service."""


class VotecastError(Exception):
    """Base class for application errors."""
    pass


class TransientStoreError(VotecastError):
    """Store unreachable or transaction retries exhausted; safe to retry later."""
    pass


class MutationConflict(TransientStoreError):
    """Concurrent edits to the same vote state exhausted the retry budget."""
    pass


class RosterUnavailable(VotecastError):
    """The candidate registry could not be read."""
    pass


class DislikeRejected(VotecastError):
    """A user tried to dislike the candidate they currently vote for."""

    def __init__(self, election_id: str, candidate_id: str):
        self.election_id = election_id
        self.candidate_id = candidate_id
        super().__init__(
            f"Cannot dislike current pick {candidate_id} in election {election_id}"
        )


class UnknownCandidate(VotecastError):
    """The candidate is not registered for the election."""

    def __init__(self, election_id: str, candidate_id: str):
        self.election_id = election_id
        self.candidate_id = candidate_id
        super().__init__(f"Candidate {candidate_id} not found in election {election_id}")
