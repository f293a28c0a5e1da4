from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, Index
from sqlalchemy.orm import relationship
from config.database import Base


class LlmUsageRecord(Base):
    """One row per model invocation (append-only); drives budget checks and analytics"""
    __tablename__ = "llm_usage_record"
    __table_args__ = (
        Index("ix_llm_usage_tenant_created", "tenant_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(50), ForeignKey("tenant_tenant.id"), nullable=False)
    phone_number = Column(String(32), nullable=True)
    model = Column(String(100), nullable=False)
    prompt_tokens = Column(Integer, default=0, nullable=False)
    completion_tokens = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    cost = Column(Float, default=0.0, nullable=False)
    success = Column(Boolean, default=True, nullable=False)
    is_fallback = Column(Boolean, default=False, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="usage_records")


class KnowledgeSnippet(Base):
    __tablename__ = "knowledge_snippet"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(50), ForeignKey("tenant_tenant.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="knowledge_snippets")
