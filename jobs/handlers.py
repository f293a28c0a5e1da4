"""
Job handlers.

Each handler starts from database state (does a reply already exist? does the
message already carry a provider id?) so a redelivered job is a no-op.
"""
import asyncio
import logging
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.cache import SessionCache
from conversations.models import Message
from conversations.service import ConversationService
from delivery.provider import ProviderClient
from delivery.schema import SendRequest
from delivery.service import DeliveryService
from llm.client import LlmClient
from llm.orchestrator import ModelOrchestrator
from models import Tenant
from sessions.service import SessionService
from shared_utils.errors import DeliveryFailed
from .models import Job
from .queue import JobQueue

logger = logging.getLogger(__name__)


class JobHandlers:

    def __init__(
        self,
        settings,
        cache: SessionCache,
        llm_client: LlmClient,
        provider: ProviderClient,
        sleep: Callable = asyncio.sleep,
    ):
        self.settings = settings
        self.cache = cache
        self.llm_client = llm_client
        self.provider = provider
        self.sleep = sleep
        self.handlers: Dict[str, Callable] = {
            "generate_reply": self.generate_reply,
            "send_message": self.send_message,
        }

    async def run(self, job: Job, db: Session) -> Optional[str]:
        handler = self.handlers.get(job.name)
        if handler is None:
            raise ValueError(f"No handler registered for job '{job.name}'")
        return await handler(dict(job.payload or {}), db)

    def _delivery(self, db: Session) -> DeliveryService:
        return DeliveryService(db, self.provider, JobQueue(db), sleep=self.sleep)

    async def generate_reply(self, payload: Dict, db: Session) -> str:
        conversations = ConversationService(db)
        inbound = db.get(Message, payload.get("inbound_message_id"))
        if inbound is None:
            logger.warning(f"Inbound message {payload.get('inbound_message_id')} no longer exists, skipping reply")
            return "missing"

        existing = conversations.get_reply_for(inbound.id)
        if existing is not None:
            # Generated on an earlier run; make sure its delivery is queued
            if not existing.provider_message_id and existing.delivery_status == "pending":
                self._delivery(db).enqueue_stored_message(existing)
            return "already_replied"

        conversation = inbound.conversation
        if not conversation.ai_enabled or conversation.status in ("archived", "completed"):
            logger.info(f"AI disabled for conversation {conversation.id}, no automated reply")
            return "ai_disabled"

        tenant = db.get(Tenant, conversation.tenant_id)
        history = conversations.get_recent_history(conversation.id, limit=10, before_id=inbound.id)
        session = SessionService(db, self.cache, self.settings.session_ttl_seconds).get_by_phone(
            conversation.customer_phone
        )
        session_context = dict(session.context)
        if session.current_flow:
            session_context["current_flow"] = session.current_flow

        orchestrator = ModelOrchestrator(db, self.llm_client, self.settings, sleep=self.sleep)
        reply = await orchestrator.generate_reply(
            tenant,
            conversation.customer_phone,
            inbound.content,
            history=history,
            customer_name=conversation.customer_name,
            session_context=session_context,
        )

        try:
            outbound = conversations.add_message(
                conversation,
                content=reply.content,
                sender_type="ai",
                reply_to_id=inbound.id,
                model_used=reply.model_used,
                processing_time_ms=reply.processing_time_ms,
                cost=reply.cost,
            )
        except IntegrityError:
            # Another worker stored the reply first
            outbound = conversations.get_reply_for(inbound.id)
            if outbound is None:
                raise
            return "already_replied"

        self._delivery(db).enqueue_stored_message(outbound)
        logger.info(
            f"🤖 Reply {outbound.id} generated by {reply.model_used} for message {inbound.id}",
            extra={"conversation_id": conversation.id, "tenant_id": conversation.tenant_id},
        )
        return "replied"

    async def send_message(self, payload: Dict, db: Session) -> str:
        delivery = self._delivery(db)
        message = None

        if payload.get("message_id") is not None and "phone_number" not in payload:
            message = db.get(Message, payload["message_id"])
            if message is None:
                logger.warning(f"Message {payload['message_id']} no longer exists, nothing to send")
                return "missing"
            request = SendRequest(
                phone_number=message.conversation.customer_phone,
                message=message.content,
                message_id=message.id,
            )
        else:
            request = SendRequest(**payload)

        result = await delivery.deliver(request, message)
        if not result.success:
            if result.retryable:
                raise DeliveryFailed(result.error or "Delivery failed", attempts=result.attempts)
            return "failed"
        return result.status
