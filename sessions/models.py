from datetime import datetime

from sqlalchemy import Column, String, DateTime, JSON
from config.database import Base


class InteractionSession(Base):
    """Durable copy of the cached session, used to rehydrate after eviction/restart"""
    __tablename__ = "interaction_session"

    id = Column(String(36), primary_key=True)
    phone_number = Column(String(32), nullable=False, index=True)
    session_data = Column(JSON, nullable=False, default=dict)
    last_activity = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<InteractionSession(id={self.id}, phone={self.phone_number}, expires_at={self.expires_at})>"
