from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from config.database import get_db
from config.settings import get_settings
from conversations.service import ConversationService
from llm.client import LlmClient
from llm.orchestrator import ModelOrchestrator
from models import Tenant
from shared_utils.phone import normalize_phone
from .schema import BudgetResponse, TenantCreate, TenantResponse, TenantSettingsUpdate

router = APIRouter(prefix="/tenants", tags=["tenants"])

logger = logging.getLogger(__name__)


def _get_tenant(db: Session, tenant_id: str) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant


def _routing_phone(value):
    if value is None:
        return None
    phone = normalize_phone(value, get_settings().default_country_code)
    if not phone:
        raise HTTPException(status_code=400, detail=f"Invalid routing phone: {value}")
    return phone


@router.post("", response_model=TenantResponse)
def create_tenant(request: TenantCreate, db: Session = Depends(get_db)):
    data = request.model_dump()
    data["routing_phone"] = _routing_phone(data["routing_phone"])
    tenant = Tenant(**data)
    db.add(tenant)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Tenant id or routing phone already in use")
    db.refresh(tenant)
    logger.info(f"✅ Created tenant {tenant.id}")
    return tenant


@router.get("/{tenant_id}", response_model=TenantResponse)
def get_tenant(tenant_id: str, db: Session = Depends(get_db)):
    return _get_tenant(db, tenant_id)


@router.patch("/{tenant_id}/settings", response_model=TenantResponse)
def update_tenant_settings(tenant_id: str, request: TenantSettingsUpdate, db: Session = Depends(get_db)):
    tenant = _get_tenant(db, tenant_id)
    updates = request.model_dump(exclude_unset=True)
    if "routing_phone" in updates:
        updates["routing_phone"] = _routing_phone(updates["routing_phone"])

    for key, value in updates.items():
        setattr(tenant, key, value)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Routing phone already belongs to another tenant")
    db.refresh(tenant)
    logger.info(f"Updated settings for tenant {tenant_id}: {', '.join(sorted(updates)) or 'nothing'}")
    return tenant


@router.get("/{tenant_id}/budget", response_model=BudgetResponse)
def get_budget(tenant_id: str, db: Session = Depends(get_db)):
    """Today's and this month's model spend against the tenant's caps"""
    tenant = _get_tenant(db, tenant_id)
    settings = get_settings()
    return ModelOrchestrator(db, LlmClient.from_settings(settings), settings).budget_status(tenant)


@router.get("/{tenant_id}/stats")
def get_conversation_stats(tenant_id: str, days: int = Query(30, ge=1, le=365), db: Session = Depends(get_db)):
    _get_tenant(db, tenant_id)
    return ConversationService(db).conversation_stats(tenant_id, days)
