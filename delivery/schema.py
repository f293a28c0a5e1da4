from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime, timezone

from config.settings import get_settings
from shared_utils.phone import normalize_phone

MAX_MESSAGE_LENGTH = 4096


class ButtonSpec(BaseModel):
    text: str = Field(..., min_length=1, max_length=20)
    type: str = "reply"


class MediaSpec(BaseModel):
    url: str
    caption: Optional[str] = None
    filename: Optional[str] = None


class SendRequest(BaseModel):
    phone_number: str
    message: str
    message_type: Literal["text", "image", "document", "audio"] = "text"
    buttons: Optional[List[ButtonSpec]] = None
    media: Optional[MediaSpec] = None
    scheduled_at: Optional[datetime] = None
    priority: Literal["urgent", "high", "normal", "low"] = "normal"
    # Stored outbound Message this send is for, if any
    message_id: Optional[int] = None

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        normalized = normalize_phone(value, get_settings().default_country_code)
        if not normalized:
            raise ValueError(f"Invalid phone number: {value}")
        return normalized

    @field_validator("message")
    @classmethod
    def validate_message(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("Message content cannot be empty")
        if len(value) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
        return value

    @field_validator("scheduled_at")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stored datetimes are naive UTC
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class BulkSendRequest(BaseModel):
    phone_numbers: List[str] = Field(..., min_length=1, max_length=10000)
    message: str
    message_type: Literal["text", "image", "document", "audio"] = "text"
    media: Optional[MediaSpec] = None
    batch_size: int = Field(100, ge=1, le=1000)
    batch_delay_ms: int = Field(1000, ge=0, le=60000)
    concurrency: int = Field(10, ge=1, le=100)


class DeliveryResult(BaseModel):
    phone_number: Optional[str] = None
    success: bool
    status: str  # sent, scheduled, already_sent, failed
    message_id: Optional[str] = None
    job_id: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    retryable: bool = False


class BulkReport(BaseModel):
    batch_id: str
    total: int
    success_count: int
    failure_count: int
    batches: int
    duration_ms: int
    results: List[DeliveryResult]


class RetryFailedRequest(BaseModel):
    lookback_hours: int = Field(24, ge=1, le=168)
    limit: int = Field(50, ge=1, le=500)
