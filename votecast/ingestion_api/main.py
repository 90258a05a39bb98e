"""
FastAPI application for the vote-state API.

Users vote, cancel and toggle dislikes here; every committed change is
published to RabbitMQ for aggregation, and results and vote states are
streamed back over WebSockets from Redis pub/sub.
"""
import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Optional

import redis.asyncio as redis
from fastapi import FastAPI, HTTPException, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..shared.exceptions import DislikeRejected, TransientStoreError, UnknownCandidate
from ..shared.models import VoteState, VoteStateChange, get_redis_channel
from .config import settings
from .database import database
from .models import (
    VoteRequest,
    MutationResponse,
    VoteStateResponse,
    ElectionResultResponse,
    ElectionSummary,
    CandidateInfo,
    HealthResponse,
    ErrorResponse,
)
from .mutations import submit_vote, cancel_vote, toggle_dislike
from .publisher import publisher, OutboxRelay
from .subscriptions import stream_channel

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_PREFIX = f"/api/{settings.API_VERSION}"
RETRY_AFTER_SECONDS = "1"

# Prometheus metrics
mutations_total = Counter(
    "vote_state_mutations_total",
    "Total number of vote-state mutation requests",
    ["operation", "status"]
)
change_publish_failures = Counter(
    "vote_state_change_publish_failures_total",
    "Changes left to the outbox relay after a failed publish"
)
deferred_changes_total = Counter(
    "vote_state_changes_deferred_total",
    "Changes left to the outbox relay behind an older unpublished change of the same user"
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Redis client for live update pub/sub
redis_client: redis.Redis = None
relay_task: Optional[asyncio.Task] = None


def get_rate_limit_key(request: Request) -> str:
    """Rate limit per user, falling back to the client address."""
    return request.headers.get(settings.USER_ID_HEADER) or get_remote_address(request)


# Rate limiter
limiter = Limiter(key_func=get_rate_limit_key)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global redis_client, relay_task

    # Startup
    logger.info(f"Starting {settings.SERVICE_NAME} service...")

    try:
        redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await redis_client.ping()
        logger.info("Redis connection established")

        await publisher.initialize()
        await database.initialize()

        relay_task = asyncio.create_task(OutboxRelay(database, publisher).run())

        logger.info(f"{settings.SERVICE_NAME} started successfully")

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")

    try:
        if relay_task:
            relay_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await relay_task
        if redis_client:
            await redis_client.aclose()
        await publisher.close()
        await database.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title="Votecast API",
    description="API for voting, dislike marks and live election results",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    started = time.perf_counter()
    response = await call_next(request)
    request_duration.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).observe(time.perf_counter() - started)
    return response


def get_user_id(request: Request) -> str:
    """Acting user, as set by the upstream auth gateway."""
    user_id = (request.headers.get(settings.USER_ID_HEADER) or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {settings.USER_ID_HEADER} header"
        )
    return user_id


def _service_unavailable(e: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Temporarily unavailable, retry later: {e}",
        headers={"Retry-After": RETRY_AFTER_SECONDS}
    )


def _vote_state_response(vote_state: VoteState) -> VoteStateResponse:
    return VoteStateResponse(**vote_state.to_dict())


async def _require_candidate(election_id: str, candidate_id: str):
    """Raise UnknownCandidate unless the candidate runs in the election."""
    if not await database.candidate_exists(election_id, candidate_id):
        raise UnknownCandidate(election_id, candidate_id)


async def _publish_change(change: VoteStateChange):
    """
    Hand a committed change to aggregation.

    The change is already in the outbox, so a failed publish only delays
    aggregation until the relay picks it up. While an older change of the
    same user is still unpublished this one waits for the relay too, which
    sends them in write order.
    """
    try:
        waiting = await database.has_unpublished_changes_before(change.user_id, change.change_id)
    except TransientStoreError as e:
        logger.warning(f"Change {change.change_id} left for the outbox relay, outbox unreadable: {e}")
        return

    if waiting:
        deferred_changes_total.inc()
        logger.info(
            f"Change {change.change_id} queued behind unpublished changes of user={change.user_id}"
        )
        return

    if not await publisher.publish_change(change):
        change_publish_failures.inc()
        logger.warning(f"Change {change.change_id} left for the outbox relay")
        return

    try:
        await database.mark_change_published(change.change_id)
    except TransientStoreError as e:
        logger.warning(f"Change {change.change_id} published but not marked, relay may resend it: {e}")


async def _notify_vote_state(vote_state: VoteState):
    """Push the new vote state to the user's live channel."""
    try:
        await redis_client.publish(
            get_redis_channel('vote_states', vote_state.user_id),
            vote_state.to_json()
        )
    except Exception as e:
        logger.warning(f"Failed to publish vote state for {vote_state.user_id}: {e}")


async def _apply_mutation(operation: str, user_id: str, election_id: str, mutation) -> MutationResponse:
    """Run a mutator in the user's transaction, then publish the change."""
    try:
        vote_state, change = await database.mutate_vote_state(user_id, election_id, mutation)

    except DislikeRejected as e:
        mutations_total.labels(operation=operation, status="rejected").inc()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    except TransientStoreError as e:
        mutations_total.labels(operation=operation, status="unavailable").inc()
        logger.error(f"{operation} failed for user={user_id} election={election_id}: {e}")
        raise _service_unavailable(e)

    if change is None:
        mutations_total.labels(operation=operation, status="unchanged").inc()
        return MutationResponse(status="unchanged", vote_state=_vote_state_response(vote_state))

    await _publish_change(change)
    await _notify_vote_state(vote_state)

    mutations_total.labels(operation=operation, status="accepted").inc()
    logger.info(
        f"{operation}: user={user_id}, election={election_id}, change_id={change.change_id}"
    )
    return MutationResponse(
        status="accepted",
        change_id=change.change_id,
        vote_state=_vote_state_response(vote_state)
    )


async def _checked_mutation(operation, user_id, election_id, candidate_id, mutation):
    try:
        await _require_candidate(election_id, candidate_id)
    except UnknownCandidate as e:
        mutations_total.labels(operation=operation, status="unknown_candidate").inc()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TransientStoreError as e:
        mutations_total.labels(operation=operation, status="unavailable").inc()
        raise _service_unavailable(e)
    return await _apply_mutation(operation, user_id, election_id, mutation)


MUTATION_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing user identity"},
    429: {"description": "Rate limit exceeded"},
    503: {"model": ErrorResponse, "description": "Store unavailable, retry later"}
}


@app.post(
    f"{API_PREFIX}/elections/{{election_id}}/vote",
    response_model=MutationResponse,
    response_model_exclude_none=True,
    responses={404: {"model": ErrorResponse, "description": "Unknown candidate"}, **MUTATION_RESPONSES}
)
@limiter.limit(settings.RATE_LIMIT)
async def vote(request: Request, election_id: str, body: VoteRequest) -> MutationResponse:
    """
    Vote for a candidate, replacing any previous vote in this election.

    - **candidate_id**: Candidate to vote for (removed from your dislikes)
    """
    user_id = get_user_id(request)
    return await _checked_mutation(
        "vote", user_id, election_id, body.candidate_id,
        partial(submit_vote, candidate_id=body.candidate_id, election_id=election_id)
    )


@app.delete(
    f"{API_PREFIX}/elections/{{election_id}}/vote",
    response_model=MutationResponse,
    response_model_exclude_none=True,
    responses=MUTATION_RESPONSES
)
@limiter.limit(settings.RATE_LIMIT)
async def cancel(request: Request, election_id: str) -> MutationResponse:
    """Withdraw your vote in this election; dislike marks are kept."""
    user_id = get_user_id(request)
    return await _apply_mutation(
        "cancel", user_id, election_id,
        partial(cancel_vote, election_id=election_id)
    )


@app.post(
    f"{API_PREFIX}/elections/{{election_id}}/dislikes/{{candidate_id}}",
    response_model=MutationResponse,
    response_model_exclude_none=True,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown candidate"},
        409: {"model": ErrorResponse, "description": "Candidate is your current pick"},
        **MUTATION_RESPONSES
    }
)
@limiter.limit(settings.RATE_LIMIT)
async def dislike(request: Request, election_id: str, candidate_id: str) -> MutationResponse:
    """Toggle the dislike mark on a candidate you are not voting for."""
    user_id = get_user_id(request)
    return await _checked_mutation(
        "dislike", user_id, election_id, candidate_id,
        partial(toggle_dislike, candidate_id=candidate_id, election_id=election_id)
    )


@app.get(
    f"{API_PREFIX}/votes/me",
    response_model=VoteStateResponse,
    response_model_exclude_none=True,
    responses={401: {"model": ErrorResponse, "description": "Missing user identity"}}
)
async def my_votes(request: Request) -> VoteStateResponse:
    """Get your current choices and dislike marks in every election."""
    user_id = get_user_id(request)
    try:
        vote_state = await database.get_vote_state(user_id)
    except TransientStoreError as e:
        raise _service_unavailable(e)
    return _vote_state_response(vote_state)


@app.get(
    f"{API_PREFIX}/elections/{{election_id}}/results",
    response_model=ElectionResultResponse,
    response_model_exclude_none=True,
    responses={503: {"model": ErrorResponse, "description": "Store unavailable"}}
)
async def get_results(election_id: str) -> ElectionResultResponse:
    """
    Get cached results for an election.

    Every registered candidate is listed, with zero counts when nobody has
    voted yet.
    """
    try:
        result = await database.get_results(election_id)
    except TransientStoreError as e:
        logger.error(f"Error getting results for election {election_id}: {e}")
        raise _service_unavailable(e)
    return ElectionResultResponse(**result.to_dict())


@app.get(
    f"{API_PREFIX}/elections",
    response_model=list[ElectionSummary]
)
async def get_elections() -> list[ElectionSummary]:
    """Get all elections with their voting-window status."""
    try:
        elections = await database.get_elections()
    except TransientStoreError as e:
        logger.error(f"Error getting elections: {e}")
        raise _service_unavailable(e)
    return [ElectionSummary(**election) for election in elections]


@app.get(
    f"{API_PREFIX}/elections/{{election_id}}/candidates",
    response_model=list[CandidateInfo]
)
async def get_candidates(election_id: str) -> list[CandidateInfo]:
    """Get candidates registered for an election."""
    try:
        candidates = await database.get_candidates(election_id)
    except TransientStoreError as e:
        logger.error(f"Error getting candidates for election {election_id}: {e}")
        raise _service_unavailable(e)
    return [CandidateInfo(**candidate) for candidate in candidates]


@app.websocket(f"{API_PREFIX}/elections/{{election_id}}/results/live")
async def results_live(websocket: WebSocket, election_id: str):
    """Current results, then every update for the election."""
    await websocket.accept()
    try:
        snapshot = await database.get_results(election_id)
    except TransientStoreError as e:
        logger.error(f"Cannot open live results for {election_id}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await stream_channel(
        websocket,
        redis_client,
        get_redis_channel('election_results', election_id),
        snapshot.to_dict()
    )


@app.websocket(f"{API_PREFIX}/votes/me/live")
async def votes_live(websocket: WebSocket):
    """Current vote state, then every change made by the user."""
    user_id = (websocket.headers.get(settings.USER_ID_HEADER) or "").strip()
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        snapshot = await database.get_vote_state(user_id)
    except TransientStoreError as e:
        logger.error(f"Cannot open live vote state for {user_id}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await stream_channel(
        websocket,
        redis_client,
        get_redis_channel('vote_states', user_id),
        snapshot.to_dict()
    )


@app.get(
    f"{API_PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check() -> HealthResponse:
    """
    Check health of the service and its dependencies.

    Verifies connections to:
    - RabbitMQ
    - PostgreSQL
    - Redis
    """
    services = {}

    try:
        rabbitmq_healthy = await publisher.check_health()
        services["rabbitmq"] = "connected" if rabbitmq_healthy else "disconnected"
    except Exception as e:
        logger.error(f"RabbitMQ health check error: {e}")
        services["rabbitmq"] = "error"

    try:
        postgres_healthy = await database.check_health()
        services["postgresql"] = "connected" if postgres_healthy else "disconnected"
    except Exception as e:
        logger.error(f"PostgreSQL health check error: {e}")
        services["postgresql"] = "error"

    try:
        await redis_client.ping()
        services["redis"] = "connected"
    except Exception as e:
        logger.error(f"Redis health check error: {e}")
        services["redis"] = "disconnected"

    all_healthy = all(state == "connected" for state in services.values())

    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "vote": f"{API_PREFIX}/elections/{{election_id}}/vote",
            "dislike": f"{API_PREFIX}/elections/{{election_id}}/dislikes/{{candidate_id}}",
            "my_votes": f"{API_PREFIX}/votes/me",
            "elections": f"{API_PREFIX}/elections",
            "results": f"{API_PREFIX}/elections/{{election_id}}/results",
            "live_results": f"{API_PREFIX}/elections/{{election_id}}/results/live",
            "health": f"{API_PREFIX}/health",
            "metrics": "/metrics"
        }
    }


def run():
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "votecast.ingestion_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )


if __name__ == "__main__":
    run()
