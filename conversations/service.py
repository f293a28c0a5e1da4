"""
Service layer for conversations and their messages
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Tenant
from shared_utils.errors import NotFoundError, PersistenceError, ValidationError
from .models import (
    Conversation,
    Message,
    CONVERSATION_STATUSES,
    OPEN_STATUSES,
    DELIVERY_STATUS_ORDER,
    DELIVERY_STATUSES,
    MESSAGE_TYPES,
    SENDER_TYPES,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096
UPDATABLE_FIELDS = ("customer_name", "status", "ai_enabled", "last_message_at")
MIN_SATISFACTION, MAX_SATISFACTION = 1, 5


class ConversationService:
    """Conversation lifecycle, message persistence and delivery-status updates"""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: int) -> Conversation:
        conversation = self.db.get(Conversation, conversation_id)
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def find_open_conversation(self, tenant_id: str, phone: str) -> Optional[Conversation]:
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.tenant_id == tenant_id,
                Conversation.customer_phone == phone,
                Conversation.status.in_(OPEN_STATUSES),
            )
            .first()
        )

    def find_or_create_conversation(
        self,
        tenant_id: str,
        phone: str,
        name: Optional[str] = None,
        max_attempts: int = 3,
    ) -> Conversation:
        """
        Return the open conversation for (tenant, phone), creating it if needed.

        Concurrent callers race on the partial unique index; the loser rolls
        back and re-reads the winner's row.
        """
        for attempt in range(1, max_attempts + 1):
            existing = self.find_open_conversation(tenant_id, phone)
            if existing:
                if name and existing.customer_name != name:
                    existing.customer_name = name
                    self.db.commit()
                return existing

            tenant = self.db.get(Tenant, tenant_id)
            if not tenant:
                raise NotFoundError(f"Tenant {tenant_id} not found")

            conversation = Conversation(
                tenant_id=tenant_id,
                customer_phone=phone,
                customer_name=name,
                status="active",
                ai_enabled=tenant.ai_enabled_default,
            )
            self.db.add(conversation)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info(
                    f"Conversation create conflict for {phone} (attempt {attempt}/{max_attempts}), re-reading",
                    extra={"tenant_id": tenant_id},
                )
                continue

            self.db.refresh(conversation)
            logger.info(f"✅ Created conversation {conversation.id} for {phone}", extra={"tenant_id": tenant_id})
            return conversation

        raise PersistenceError(f"Could not find or create conversation for {tenant_id}/{phone}")

    def touch_inbound(self, conversation: Conversation, at: Optional[datetime] = None) -> Conversation:
        """A new customer message reopens a closed conversation"""
        if conversation.status == "closed":
            conversation.status = "active"
        conversation.last_message_at = at or datetime.utcnow()
        self.db.commit()
        return conversation

    def update_conversation(self, conversation_id: int, **fields) -> Conversation:
        conversation = self.get_conversation(conversation_id)

        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "status" in fields and fields["status"] not in CONVERSATION_STATUSES:
            raise ValidationError(f"Invalid conversation status: {fields['status']}")

        for key, value in fields.items():
            setattr(conversation, key, value)

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError(
                f"Another open conversation already exists for {conversation.customer_phone}"
            )
        self.db.refresh(conversation)
        return conversation

    def toggle_ai(self, conversation_id: int, enabled: Optional[bool] = None) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        new_value = (not conversation.ai_enabled) if enabled is None else enabled
        logger.info(f"AI {'enabled' if new_value else 'disabled'} for conversation {conversation_id}")
        if new_value and conversation.status == "escalated":
            # Handing back to the AI ends the handoff
            return self.update_conversation(conversation_id, ai_enabled=True, status="active")
        return self.update_conversation(conversation_id, ai_enabled=new_value)

    def archive(self, conversation_id: int) -> Conversation:
        return self.update_conversation(conversation_id, status="archived")

    def close(self, conversation_id: int) -> Conversation:
        return self.update_conversation(conversation_id, status="closed")

    def escalate(self, conversation_id: int, reason: str, sessions=None) -> Conversation:
        """
        Hand the conversation to a human: AI replies stop, the reason is kept
        and the customer's interaction session ends.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Escalation reason is required")

        conversation = self.get_conversation(conversation_id)
        if conversation.status not in OPEN_STATUSES:
            raise ValidationError(f"Cannot escalate a {conversation.status} conversation")

        conversation.status = "escalated"
        conversation.ai_enabled = False
        conversation.escalation_reason = reason[:1000]
        conversation.escalated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(conversation)

        if sessions is not None:
            sessions.end(conversation.customer_phone)
        logger.info(
            f"🙋 Conversation {conversation_id} escalated: {reason}",
            extra={"tenant_id": conversation.tenant_id, "conversation_id": conversation_id},
        )
        return conversation

    def complete(self, conversation_id: int, satisfaction_score: Optional[int] = None, sessions=None) -> Conversation:
        """Mark the conversation resolved, recording resolution time and an optional 1-5 score"""
        if satisfaction_score is not None and not (MIN_SATISFACTION <= satisfaction_score <= MAX_SATISFACTION):
            raise ValidationError(f"Satisfaction score must be between {MIN_SATISFACTION} and {MAX_SATISFACTION}")

        conversation = self.get_conversation(conversation_id)
        if conversation.status not in OPEN_STATUSES:
            raise ValidationError(f"Cannot complete a {conversation.status} conversation")

        now = datetime.utcnow()
        conversation.status = "completed"
        conversation.completed_at = now
        conversation.resolution_time_seconds = max(0, int((now - conversation.created_at).total_seconds()))
        conversation.satisfaction_score = satisfaction_score
        self.db.commit()
        self.db.refresh(conversation)

        if sessions is not None:
            sessions.end(conversation.customer_phone)
        logger.info(
            f"✅ Conversation {conversation_id} completed in {conversation.resolution_time_seconds}s",
            extra={"tenant_id": conversation.tenant_id, "conversation_id": conversation_id},
        )
        return conversation

    def delete_conversation(self, conversation_id: int) -> int:
        """Delete a conversation and its messages. Returns the number of messages removed."""
        conversation = self.get_conversation(conversation_id)
        message_count = len(conversation.messages)
        self.db.delete(conversation)
        self.db.commit()
        logger.info(f"🗑️ Deleted conversation {conversation_id} ({message_count} messages)")
        return message_count

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
        self,
        conversation: Conversation,
        content: str,
        sender_type: str,
        message_type: str = "text",
        provider_message_id: Optional[str] = None,
        delivery_status: str = "pending",
        reply_to_id: Optional[int] = None,
        model_used: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        cost: float = 0.0,
    ) -> Message:
        """Persist a message. Failures here propagate; the pipeline cannot continue without it."""
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message content exceeds {MAX_MESSAGE_LENGTH} characters")
        if sender_type not in SENDER_TYPES:
            raise ValidationError(f"Invalid sender type: {sender_type}")
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Invalid message type: {message_type}")

        message = Message(
            conversation_id=conversation.id,
            content=content,
            sender_type=sender_type,
            message_type=message_type,
            provider_message_id=provider_message_id,
            delivery_status=delivery_status,
            reply_to_id=reply_to_id,
            model_used=model_used,
            processing_time_ms=processing_time_ms,
            cost=cost or 0.0,
        )
        self.db.add(message)
        conversation.last_message_at = datetime.utcnow()
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store message for conversation {conversation.id}: {e}") from e
        self.db.refresh(message)
        return message

    def record_inbound_message(
        self,
        conversation: Conversation,
        content: str,
        message_type: str,
        provider_message_id: Optional[str],
    ) -> Tuple[Message, bool]:
        """
        Store a customer message. Returns (message, created); a redelivered
        webhook for a known provider id returns the existing row.
        """
        if provider_message_id:
            existing = self.get_by_provider_id(provider_message_id)
            if existing:
                return existing, False

        try:
            message = self.add_message(
                conversation,
                content=content,
                sender_type="customer",
                message_type=message_type,
                provider_message_id=provider_message_id,
                delivery_status="delivered",
            )
        except IntegrityError as e:
            existing = self.get_by_provider_id(provider_message_id) if provider_message_id else None
            if existing:
                return existing, False
            raise PersistenceError(f"Failed to store inbound message: {e}") from e
        return message, True

    def get_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(Message.provider_message_id == provider_message_id).first()

    def get_reply_for(self, inbound_message_id: int) -> Optional[Message]:
        return self.db.query(Message).filter(Message.reply_to_id == inbound_message_id).first()

    def list_messages(self, conversation_id: int, limit: int = 50, offset: int = 0) -> List[Message]:
        return (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_recent_history(
        self, conversation_id: int, limit: int = 10, before_id: Optional[int] = None
    ) -> List[Message]:
        """Last ``limit`` messages, oldest first, optionally only those before ``before_id``."""
        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if before_id is not None:
            query = query.filter(Message.id < before_id)
        recent = query.order_by(Message.id.desc()).limit(limit).all()
        return list(reversed(recent))

    def mark_sent(self, message: Message, provider_message_id: Optional[str]) -> Message:
        message.provider_message_id = provider_message_id or message.provider_message_id
        if DELIVERY_STATUS_ORDER.get(message.delivery_status, -1) < DELIVERY_STATUS_ORDER["sent"]:
            message.delivery_status = "sent"
        message.sent_at = message.sent_at or datetime.utcnow()
        message.failed_reason = None
        self.db.commit()
        return message

    def mark_failed(self, message: Message, reason: str) -> Message:
        message.delivery_status = "failed"
        message.failed_reason = (reason or "")[:1000]
        self.db.commit()
        return message

    def update_delivery_status(
        self,
        provider_message_id: str,
        status: str,
        timestamp: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Advance a message's delivery status from a provider callback.

        Returns False when no message carries ``provider_message_id``.
        Status never moves backwards; failed is only accepted before delivery.
        """
        if status not in DELIVERY_STATUSES:
            raise ValidationError(f"Invalid delivery status: {status}")

        message = self.get_by_provider_id(provider_message_id)
        if not message:
            logger.warning(f"⚠️ Status '{status}' for unknown provider message {provider_message_id}, ignoring")
            return False

        current = message.delivery_status
        at = timestamp or datetime.utcnow()

        if status == "failed":
            if current in ("pending", "sent"):
                message.delivery_status = "failed"
                message.failed_reason = (error or "Provider reported failure")[:1000]
        elif current != "failed" and DELIVERY_STATUS_ORDER[status] > DELIVERY_STATUS_ORDER.get(current, -1):
            message.delivery_status = status
            if status == "sent":
                message.sent_at = message.sent_at or at
            elif status == "delivered":
                message.delivered_at = message.delivered_at or at
            elif status == "read":
                message.delivered_at = message.delivered_at or at
                message.read_at = message.read_at or at
        else:
            logger.debug(f"Ignoring stale status '{status}' for message {message.id} (current: {current})")

        self.db.commit()
        return True

    def find_failed_outbound(self, since: datetime, limit: int) -> List[Message]:
        return (
            self.db.query(Message)
            .filter(
                Message.sender_type.in_(("ai", "agent")),
                Message.delivery_status == "failed",
                Message.created_at >= since,
            )
            .order_by(Message.created_at)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def conversation_stats(self, tenant_id: str, days: int = 30) -> Dict:
        since = datetime.utcnow() - timedelta(days=days)
        by_status = dict(
            self.db.query(Conversation.status, func.count(Conversation.id))
            .filter(Conversation.tenant_id == tenant_id)
            .group_by(Conversation.status)
            .all()
        )
        message_query = (
            self.db.query(Message)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .filter(Conversation.tenant_id == tenant_id, Message.created_at >= since)
        )
        by_sender = dict(
            message_query.with_entities(Message.sender_type, func.count(Message.id))
            .group_by(Message.sender_type)
            .all()
        )
        ai_cost = message_query.with_entities(func.coalesce(func.sum(Message.cost), 0.0)).scalar()

        return {
            "tenant_id": tenant_id,
            "period_days": days,
            "conversations": {status: by_status.get(status, 0) for status in CONVERSATION_STATUSES},
            "messages": {sender: by_sender.get(sender, 0) for sender in SENDER_TYPES},
            "ai_cost": round(float(ai_cost or 0.0), 6),
        }
