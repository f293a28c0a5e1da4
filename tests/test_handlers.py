"""
Tests for job handlers: reply generation and message delivery are idempotent.
"""
import json

import httpx
import pytest

from config.cache import TTLCache
from conversations.models import Message
from conversations.service import ConversationService
from delivery.provider import ProviderClient
from jobs.handlers import JobHandlers
from jobs.models import Job
from jobs.queue import DELIVERY_QUEUE
from llm.client import LlmClient
from shared_utils.errors import DeliveryFailed


class Backends:
    """Counts calls to the model API and the send API"""

    def __init__(self, provider_status=200):
        self.model_calls = 0
        self.sends = []
        self.provider_status = provider_status

    def model(self, request):
        self.model_calls += 1
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "We ship in 3-5 business days."}}],
            "usage": {"prompt_tokens": 400, "completion_tokens": 100, "total_tokens": 500},
        })

    def provider(self, request):
        self.sends.append(json.loads(request.content))
        if self.provider_status != 200:
            return httpx.Response(self.provider_status, json={"error": "unavailable"})
        return httpx.Response(200, json={"messageId": f"wamid.out{len(self.sends)}"})


@pytest.fixture
def backends():
    return Backends()


@pytest.fixture
def handlers(settings, backends, no_sleep):
    return JobHandlers(
        settings,
        TTLCache(),
        LlmClient.from_settings(settings, transport=httpx.MockTransport(backends.model)),
        ProviderClient.from_settings(settings, transport=httpx.MockTransport(backends.provider)),
        sleep=no_sleep,
    )


@pytest.fixture
def inbound(db_session, sample_conversation):
    message, _ = ConversationService(db_session).record_inbound_message(
        sample_conversation, "How long does shipping take?", "text", "wamid.in1"
    )
    return message


class TestGenerateReply:
    @pytest.mark.asyncio
    async def test_reply_is_stored_and_delivery_enqueued(self, handlers, backends, db_session, inbound):
        outcome = await handlers.generate_reply({"inbound_message_id": inbound.id}, db_session)

        assert outcome == "replied"
        reply = db_session.query(Message).filter(Message.reply_to_id == inbound.id).one()
        assert reply.sender_type == "ai"
        assert reply.content == "We ship in 3-5 business days."
        assert reply.delivery_status == "pending"
        assert reply.cost > 0

        job = db_session.query(Job).filter(Job.queue == DELIVERY_QUEUE).one()
        assert job.payload == {"message_id": reply.id}
        assert job.ordering_key == f"conversation:{inbound.conversation_id}"

    @pytest.mark.asyncio
    async def test_rerun_is_a_noop(self, handlers, backends, db_session, inbound):
        """A redelivered job does not call the model again or store a second reply."""
        await handlers.generate_reply({"inbound_message_id": inbound.id}, db_session)
        outcome = await handlers.generate_reply({"inbound_message_id": inbound.id}, db_session)

        assert outcome == "already_replied"
        assert backends.model_calls == 1
        assert db_session.query(Message).filter(Message.sender_type == "ai").count() == 1
        assert db_session.query(Job).filter(Job.queue == DELIVERY_QUEUE).count() == 1

    @pytest.mark.asyncio
    async def test_ai_disabled_skips_model(self, handlers, backends, db_session, inbound, sample_conversation):
        ConversationService(db_session).toggle_ai(sample_conversation.id, False)

        outcome = await handlers.generate_reply({"inbound_message_id": inbound.id}, db_session)

        assert outcome == "ai_disabled"
        assert backends.model_calls == 0

    @pytest.mark.asyncio
    async def test_completed_conversation_gets_no_reply(self, handlers, backends, db_session, inbound, sample_conversation):
        ConversationService(db_session).complete(sample_conversation.id)

        outcome = await handlers.generate_reply({"inbound_message_id": inbound.id}, db_session)

        assert outcome == "ai_disabled"
        assert backends.model_calls == 0

    @pytest.mark.asyncio
    async def test_missing_inbound_message(self, handlers, db_session, sample_tenant):
        assert await handlers.generate_reply({"inbound_message_id": 999}, db_session) == "missing"


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_stored_message_sent_once(self, handlers, backends, db_session, sample_conversation):
        reply = ConversationService(db_session).add_message(sample_conversation, "On its way!", "ai")

        first = await handlers.send_message({"message_id": reply.id}, db_session)
        second = await handlers.send_message({"message_id": reply.id}, db_session)

        assert first == "sent"
        assert second == "already_sent"
        assert len(backends.sends) == 1
        assert backends.sends[0]["to"] == sample_conversation.customer_phone
        db_session.refresh(reply)
        assert reply.provider_message_id == "wamid.out1"

    @pytest.mark.asyncio
    async def test_ad_hoc_payload(self, handlers, backends, db_session):
        outcome = await handlers.send_message({"phone_number": "+14155550100", "message": "Reminder"}, db_session)
        assert outcome == "sent"
        assert backends.sends[0]["message"] == "Reminder"

    @pytest.mark.asyncio
    async def test_transient_failure_raises_for_queue_retry(self, settings, no_sleep, db_session, sample_conversation):
        backends = Backends(provider_status=503)
        handlers = JobHandlers(
            settings,
            TTLCache(),
            LlmClient.from_settings(settings, transport=httpx.MockTransport(backends.model)),
            ProviderClient.from_settings(settings, transport=httpx.MockTransport(backends.provider)),
            sleep=no_sleep,
        )
        reply = ConversationService(db_session).add_message(sample_conversation, "On its way!", "ai")

        with pytest.raises(DeliveryFailed):
            await handlers.send_message({"message_id": reply.id}, db_session)
        db_session.refresh(reply)
        assert reply.delivery_status == "failed"

    @pytest.mark.asyncio
    async def test_unknown_job_name(self, handlers, db_session):
        job = Job(queue=DELIVERY_QUEUE, name="launch_rocket", payload={})
        with pytest.raises(ValueError):
            await handlers.run(job, db_session)
