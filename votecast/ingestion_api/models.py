"""Pydantic models for request/response validation."""
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VoteRequest(BaseModel):
    """Vote submission request model."""

    candidate_id: str = Field(..., description="Candidate to vote for")

    @field_validator("candidate_id")
    @classmethod
    def validate_candidate_id(cls, v):
        """Validate candidate_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Candidate ID cannot be empty")
        return v.strip()

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"candidate_id": "cand-alice"}
        }
    )


class ElectionChoiceResponse(BaseModel):
    """One election entry of a user's vote state."""

    candidate_id: Optional[str] = Field(None, description="Current pick, absent when no active vote")
    disliked_candidates: List[str] = Field(default_factory=list, description="Candidates flagged as unwanted")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VoteStateResponse(BaseModel):
    """A user's full vote state."""

    user_id: str
    elections: Dict[str, ElectionChoiceResponse] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user_id": "user-42",
                "elections": {
                    "mayor-2025": {
                        "candidate_id": "cand-alice",
                        "disliked_candidates": ["cand-bob"],
                        "created_at": "2025-03-01T10:00:00+00:00",
                        "updated_at": "2025-03-01T10:05:00+00:00"
                    }
                }
            }
        }
    )


class MutationResponse(BaseModel):
    """Response to a vote, cancel or dislike request."""

    status: Literal["accepted", "unchanged"] = Field(..., description="Whether the vote state changed")
    change_id: Optional[int] = Field(None, description="Change sequence number when accepted")
    vote_state: VoteStateResponse


class CandidateResultResponse(BaseModel):
    """Per-candidate statistics; dislike fields only when the candidate has dislikes."""

    count: int
    percentage: float
    dislike_count: Optional[int] = None
    dislike_percentage: Optional[float] = None


class ElectionResultResponse(BaseModel):
    """Election results response model."""

    election_id: str
    total_votes: int = Field(..., description="Users with an active vote")
    total_dislike_marks: int = Field(..., description="Dislike marks over all candidates")
    candidates: Dict[str, CandidateResultResponse]
    last_updated: Optional[datetime] = Field(None, description="Last aggregation write")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "election_id": "mayor-2025",
                "total_votes": 3,
                "total_dislike_marks": 1,
                "candidates": {
                    "cand-alice": {"count": 2, "percentage": 66.7},
                    "cand-bob": {"count": 1, "percentage": 33.3,
                                 "dislike_count": 1, "dislike_percentage": 100.0}
                },
                "last_updated": "2025-03-01T10:05:00+00:00"
            }
        }
    )


class ElectionSummary(BaseModel):
    """Election listing entry."""

    id: str
    title: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_voting_period: bool = Field(..., description="Whether now falls inside the voting window")


class CandidateInfo(BaseModel):
    """Registered candidate."""

    id: str
    election_id: str
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Health check timestamp")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "services": {
                    "rabbitmq": "connected",
                    "postgresql": "connected",
                    "redis": "connected"
                },
                "timestamp": "2025-03-01T10:30:00+00:00"
            }
        }
    )


class ErrorResponse(BaseModel):
    """Error response model."""

    detail: str = Field(..., description="Error message")
