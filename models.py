from datetime import datetime

from sqlalchemy import Column, String, Boolean, Float, DateTime, Text
from sqlalchemy.orm import relationship
from config.database import Base


class Tenant(Base):
    __tablename__ = "tenant_tenant"

    id = Column(String(50), primary_key=True)
    organization = Column(String(100), nullable=False)
    routing_phone = Column(String(32), nullable=True, unique=True)
    business_context = Column(Text, nullable=True)
    ai_enabled_default = Column(Boolean, default=True, nullable=False)
    daily_budget = Column(Float, nullable=True)
    monthly_budget = Column(Float, nullable=True)
    verified = Column(Boolean, default=False, nullable=False)
    webhook_secret = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversations = relationship("Conversation", back_populates="tenant")
    usage_records = relationship("LlmUsageRecord", back_populates="tenant")
    knowledge_snippets = relationship("KnowledgeSnippet", back_populates="tenant")

    def __repr__(self):
        return f"<Tenant(id={self.id}, organization={self.organization})>"


# Register every mapped table on Base.metadata
from conversations.models import Conversation, Message  # noqa: E402,F401
from llm.models import LlmUsageRecord, KnowledgeSnippet  # noqa: E402,F401
from sessions.models import InteractionSession  # noqa: E402,F401
from webhook.models import WebhookLog  # noqa: E402,F401
from jobs.models import Job  # noqa: E402,F401
