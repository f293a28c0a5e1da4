from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class ConversationCreate(BaseModel):
    tenant_id: str
    customer_phone: str
    customer_name: Optional[str] = None


class AIToggleRequest(BaseModel):
    # Omitted means flip the current value
    enabled: Optional[bool] = None


class EscalateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class CompleteRequest(BaseModel):
    satisfaction_score: Optional[int] = Field(None, ge=1, le=5)


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    content: str
    sender_type: str
    message_type: str
    provider_message_id: Optional[str] = None
    delivery_status: str
    failed_reason: Optional[str] = None
    reply_to_id: Optional[int] = None
    model_used: Optional[str] = None
    processing_time_ms: Optional[int] = None
    cost: float = 0.0
    created_at: datetime
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    id: int
    tenant_id: str
    customer_phone: str
    customer_name: Optional[str] = None
    status: str
    ai_enabled: bool
    last_message_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    escalated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    resolution_time_seconds: Optional[int] = None
    satisfaction_score: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MessageListResponse(BaseModel):
    conversation_id: int
    messages: List[MessageResponse]
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)
