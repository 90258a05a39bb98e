"""Unit tests for change message handling in the aggregation service."""

import json

import pytest

from votecast.aggregation.aggregator import VoteAggregator, parse_change_message
from votecast.aggregation.engine import AggregationEngine
from votecast.aggregation.rabbitmq_client import RabbitMQClient

from .conftest import InMemoryResultStore, RecordingNotifier


class FakeMessage:
    """Minimal stand-in for an aio-pika incoming message."""

    def __init__(self, body: bytes):
        self.body = body
        self.rejected = None

    async def reject(self, requeue: bool = False):
        self.rejected = requeue


def _body(**fields) -> bytes:
    return json.dumps(fields).encode()


class TestParseChangeMessage:
    """Decoding change message bodies."""

    def test_create_message(self):
        """Test: A create carries a null before-image."""
        change_id, before, after = parse_change_message(_body(
            change_id=3,
            user_id='u1',
            before=None,
            after={'user_id': 'u1', 'elections': {'mayor': {'candidate_id': 'alice'}}},
        ))

        assert change_id == 3
        assert before is None
        assert after.choice_for('mayor').candidate_id == 'alice'

    def test_image_user_id_defaults_to_message_user(self):
        """Test: Images without their own user_id inherit the message's."""
        _, before, after = parse_change_message(_body(
            user_id='u1',
            before={'elections': {}},
            after={'elections': {'mayor': {'disliked_candidates': ['bob']}}},
        ))

        assert before.user_id == 'u1'
        assert after.user_id == 'u1'

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2]",
        _body(user_id='u1', before=None, after=None),
        _body(before=None, after={'elections': {}}),
        _body(user_id='u1', before=None, after=['mayor']),
    ])
    def test_malformed_messages(self, body):
        """Test: Bodies that cannot describe a change raise ValueError."""
        with pytest.raises(ValueError):
            parse_change_message(body)


@pytest.mark.asyncio
class TestOnMessage:
    """Consumer callback."""

    @pytest.fixture
    def aggregator(self, roster):
        """Aggregator wired to in-memory stores; the store and notifier hang off the engine."""
        aggregator = VoteAggregator()
        aggregator.engine = AggregationEngine(InMemoryResultStore(), roster, RecordingNotifier())
        return aggregator

    async def test_valid_message_updates_results(self, aggregator):
        """Test: A change message is applied and its results published."""
        message = FakeMessage(_body(
            change_id=1,
            user_id='u1',
            before=None,
            after={'user_id': 'u1', 'elections': {'mayor': {'candidate_id': 'alice'}}},
        ))

        await aggregator._on_message(message)

        assert message.rejected is None
        assert aggregator.engine.result_store.results['mayor'].total_votes == 1
        assert [r.election_id for r in aggregator.engine.notifier.published] == ['mayor']

    async def test_malformed_message_rejected_without_requeue(self, aggregator):
        """Test: Garbage is dropped instead of redelivered forever."""
        message = FakeMessage(b"{broken")

        await aggregator._on_message(message)

        assert message.rejected is False
        assert aggregator.engine.result_store.results == {}


class DeliveredMessage:
    """Incoming message recording how it was settled."""

    def __init__(self, redelivered: bool = False):
        self.message_id = "m-1"
        self.redelivered = redelivered
        self.processed = False
        self.settled = None

    async def ack(self):
        self.processed = True
        self.settled = "ack"

    async def nack(self, requeue: bool = True):
        self.processed = True
        self.settled = "requeue" if requeue else "dead-letter"


@pytest.mark.asyncio
class TestDispatch:
    """Acknowledgement policy of the change consumer."""

    async def test_handled_message_is_acked(self):
        """Test: A message the callback returns from is acknowledged."""
        message = DeliveredMessage()

        async def handler(msg):
            pass

        await RabbitMQClient()._dispatch(message, handler, auto_ack=False)

        assert message.settled == "ack"

    async def test_failure_requeues_once_then_dead_letters(self):
        """Test: A failing message is retried once, then dead-lettered."""
        async def handler(msg):
            raise RuntimeError("boom")

        first = DeliveredMessage(redelivered=False)
        second = DeliveredMessage(redelivered=True)
        await RabbitMQClient()._dispatch(first, handler, auto_ack=False)
        await RabbitMQClient()._dispatch(second, handler, auto_ack=False)

        assert first.settled == "requeue"
        assert second.settled == "dead-letter"
