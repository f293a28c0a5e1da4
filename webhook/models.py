from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON
from config.database import Base


class WebhookLog(Base):
    """Append-only audit trail of webhook deliveries"""
    __tablename__ = "webhook_log"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), default="whatsapp", nullable=False)
    payload = Column(JSON, nullable=True)
    payload_truncated = Column(Boolean, default=False, nullable=False)
    signature = Column(String(255), nullable=True)
    is_valid = Column(Boolean, default=False, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)
    status = Column(String(30), nullable=True)  # ok, partial, invalid_signature, invalid_payload, error
    processed_messages = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    # Tenant whose own secret verified the signature; reapplied on reprocessing
    signing_tenant_id = Column(String(50), nullable=True)
    reprocessed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
