from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class TenantCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=50)
    organization: str = Field(..., min_length=1, max_length=100)
    routing_phone: Optional[str] = None
    business_context: Optional[str] = None
    ai_enabled_default: bool = True
    daily_budget: Optional[float] = Field(None, ge=0)
    monthly_budget: Optional[float] = Field(None, ge=0)
    verified: bool = False


class TenantSettingsUpdate(BaseModel):
    organization: Optional[str] = Field(None, min_length=1, max_length=100)
    routing_phone: Optional[str] = None
    business_context: Optional[str] = None
    ai_enabled_default: Optional[bool] = None
    daily_budget: Optional[float] = Field(None, ge=0)
    monthly_budget: Optional[float] = Field(None, ge=0)
    verified: Optional[bool] = None
    webhook_secret: Optional[str] = Field(None, max_length=255)


class TenantResponse(BaseModel):
    id: str
    organization: str
    routing_phone: Optional[str] = None
    business_context: Optional[str] = None
    ai_enabled_default: bool
    daily_budget: Optional[float] = None
    monthly_budget: Optional[float] = None
    verified: bool
    created_at: datetime

    class Config:
        from_attributes = True


class BudgetResponse(BaseModel):
    tenant_id: str
    daily_limit: float
    monthly_limit: float
    spent_today: float
    spent_month: float
    daily_exceeded: bool
    monthly_exceeded: bool
