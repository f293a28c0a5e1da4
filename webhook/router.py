from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import Optional
import logging

from config.cache import SessionCache, get_session_cache
from config.database import get_db
from config.settings import get_settings
from shared_utils.errors import VerificationError
from .service import WebhookProcessor, webhook_stats

router = APIRouter(tags=["webhook"])

logger = logging.getLogger(__name__)


@router.get("/webhook", response_class=PlainTextResponse)
def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db),
    cache: SessionCache = Depends(get_session_cache),
):
    """Provider subscription handshake: echo hub.challenge when the token matches"""
    try:
        challenge = WebhookProcessor(db, get_settings(), cache).verify(hub_mode, hub_verify_token, hub_challenge)
    except VerificationError as e:
        logger.warning(f"❌ Webhook verification failed: {e}")
        raise HTTPException(status_code=403, detail="Verification failed")

    logger.info("✅ Webhook verified")
    return PlainTextResponse(challenge)


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    cache: SessionCache = Depends(get_session_cache),
):
    """
    Inbound messages and status callbacks.
    Always 200; the body's status field carries the outcome.
    """
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256")

    processor = WebhookProcessor(db, get_settings(), cache)
    result = await run_in_threadpool(processor.handle, body, signature)
    return JSONResponse(status_code=200, content=result)


@router.get("/webhook/stats")
def get_webhook_stats(days: int = Query(7, ge=1, le=90), db: Session = Depends(get_db)):
    return webhook_stats(db, days)


@router.post("/webhook/reprocess-failed")
def reprocess_failed_webhooks(
    hours: int = Query(24, ge=1, le=168),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    cache: SessionCache = Depends(get_session_cache),
):
    """Replay recent webhook deliveries that errored or only partly succeeded"""
    return WebhookProcessor(db, get_settings(), cache).reprocess_failed(hours=hours, limit=limit)
