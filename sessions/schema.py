from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class SessionState(BaseModel):
    session_id: str
    phone_number: str
    current_flow: Optional[str] = None
    current_step: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    message_count: int = 0
    created_at: datetime
    last_activity: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_session_data(self) -> Dict[str, Any]:
        """Shape stored in InteractionSession.session_data"""
        return {
            "current_flow": self.current_flow,
            "current_step": self.current_step,
            "context": self.context,
            "message_count": self.message_count,
        }
