from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from config.cache import SessionCache, get_session_cache
from config.database import get_db
from config.settings import get_settings
from sessions.service import SessionService
from shared_utils.errors import NotFoundError, ValidationError
from shared_utils.phone import normalize_phone
from .schema import (
    AIToggleRequest,
    CompleteRequest,
    ConversationCreate,
    ConversationResponse,
    EscalateRequest,
    MessageListResponse,
    MessageResponse,
)
from .service import ConversationService

router = APIRouter(prefix="/conversations", tags=["conversations"])

logger = logging.getLogger(__name__)


@router.post("", response_model=ConversationResponse)
def create_conversation(request: ConversationCreate, db: Session = Depends(get_db)):
    """Open (or return the existing open) conversation for a customer"""
    phone = normalize_phone(request.customer_phone, get_settings().default_country_code)
    if not phone:
        raise HTTPException(status_code=400, detail=f"Invalid phone number: {request.customer_phone}")

    try:
        return ConversationService(db).find_or_create_conversation(
            request.tenant_id, phone, request.customer_name
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{conversation_id}", response_model=ConversationResponse)
def get_conversation(conversation_id: int, db: Session = Depends(get_db)):
    try:
        return ConversationService(db).get_conversation(conversation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
def get_messages(
    conversation_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    service = ConversationService(db)
    try:
        service.get_conversation(conversation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    messages = service.list_messages(conversation_id, limit=limit, offset=offset)
    return MessageListResponse(
        conversation_id=conversation_id,
        messages=[MessageResponse.model_validate(m) for m in messages],
        limit=limit,
        offset=offset,
    )


@router.patch("/{conversation_id}/ai", response_model=ConversationResponse)
def toggle_ai(conversation_id: int, request: AIToggleRequest, db: Session = Depends(get_db)):
    try:
        return ConversationService(db).toggle_ai(conversation_id, request.enabled)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{conversation_id}/archive", response_model=ConversationResponse)
def archive_conversation(conversation_id: int, db: Session = Depends(get_db)):
    try:
        return ConversationService(db).archive(conversation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{conversation_id}")
def delete_conversation(conversation_id: int, db: Session = Depends(get_db)):
    try:
        removed = ConversationService(db).delete_conversation(conversation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Conversation deleted successfully", "id": conversation_id, "messages_deleted": removed}


@router.post("/{conversation_id}/escalate", response_model=ConversationResponse)
def escalate_conversation(
    conversation_id: int,
    request: EscalateRequest,
    db: Session = Depends(get_db),
    cache: SessionCache = Depends(get_session_cache),
):
    """Hand the conversation to a human agent; AI replies stop"""
    sessions = SessionService(db, cache, get_settings().session_ttl_seconds)
    try:
        return ConversationService(db).escalate(conversation_id, request.reason, sessions=sessions)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{conversation_id}/complete", response_model=ConversationResponse)
def complete_conversation(
    conversation_id: int,
    request: Optional[CompleteRequest] = None,
    db: Session = Depends(get_db),
    cache: SessionCache = Depends(get_session_cache),
):
    sessions = SessionService(db, cache, get_settings().session_ttl_seconds)
    score = request.satisfaction_score if request else None
    try:
        return ConversationService(db).complete(conversation_id, score, sessions=sessions)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
