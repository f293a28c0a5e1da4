from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, Index, text
from sqlalchemy.orm import relationship
from config.database import Base

CONVERSATION_STATUSES = ("active", "closed", "escalated", "completed", "archived")
# Escalated stays open so the customer keeps writing into the human-owned thread
OPEN_STATUSES = ("active", "closed", "escalated")

SENDER_TYPES = ("customer", "ai", "agent")
MESSAGE_TYPES = ("text", "image", "document", "audio")

# Delivery status only ever moves forward along this order; failed is terminal
DELIVERY_STATUS_ORDER = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}
DELIVERY_STATUSES = ("pending", "sent", "delivered", "read", "failed")


class Conversation(Base):
    __tablename__ = "pipeline_conversation"
    __table_args__ = (
        # At most one open (active/closed/escalated) conversation per tenant + customer
        Index(
            "uq_conversation_open_per_customer",
            "tenant_id",
            "customer_phone",
            unique=True,
            sqlite_where=text("status IN ('active', 'closed', 'escalated')"),
            postgresql_where=text("status IN ('active', 'closed', 'escalated')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(50), ForeignKey("tenant_tenant.id"), nullable=False, index=True)
    customer_phone = Column(String(32), nullable=False, index=True)
    customer_name = Column(String(255), nullable=True)
    status = Column(String(20), default="active", nullable=False)
    ai_enabled = Column(Boolean, default=True, nullable=False)
    last_message_at = Column(DateTime, nullable=True)

    # Human handoff
    escalation_reason = Column(Text, nullable=True)
    escalated_at = Column(DateTime, nullable=True)

    # Completion
    completed_at = Column(DateTime, nullable=True)
    resolution_time_seconds = Column(Integer, nullable=True)
    satisfaction_score = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.id",
    )

    def __repr__(self):
        return f"<Conversation(id={self.id}, tenant={self.tenant_id}, phone={self.customer_phone}, status={self.status})>"


class Message(Base):
    __tablename__ = "pipeline_message"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(
        Integer, ForeignKey("pipeline_conversation.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content = Column(Text, nullable=False)
    sender_type = Column(String(20), nullable=False)
    message_type = Column(String(20), default="text", nullable=False)

    # Provider wamid; unique when present so webhook redelivery is detectable
    provider_message_id = Column(String(255), nullable=True, unique=True)
    delivery_status = Column(String(20), default="pending", nullable=False)
    failed_reason = Column(Text, nullable=True)

    # Inbound message an AI reply answers; one reply per inbound message
    reply_to_id = Column(Integer, nullable=True, unique=True)

    model_used = Column(String(100), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    cost = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="messages")

    @property
    def is_outbound(self) -> bool:
        return self.sender_type in ("ai", "agent")
