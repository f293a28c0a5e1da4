from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from config.database import get_db
from config.settings import get_settings
from .provider import ProviderClient
from .schema import BulkReport, BulkSendRequest, DeliveryResult, RetryFailedRequest, SendRequest
from .service import DeliveryService

router = APIRouter(prefix="/messages", tags=["messages"])

logger = logging.getLogger(__name__)


def get_provider_client() -> ProviderClient:
    return ProviderClient.from_settings(get_settings())


def get_delivery_service(
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> DeliveryService:
    return DeliveryService(db, provider)


@router.post("/send", response_model=DeliveryResult)
async def send_message(request: SendRequest, service: DeliveryService = Depends(get_delivery_service)):
    """Send one message now, or schedule it when scheduled_at is in the future"""
    return await service.send_message(request)


@router.post("/bulk", response_model=BulkReport)
async def send_bulk(request: BulkSendRequest, service: DeliveryService = Depends(get_delivery_service)):
    return await service.send_bulk(request)


@router.post("/retry-failed")
def retry_failed(request: RetryFailedRequest, service: DeliveryService = Depends(get_delivery_service)):
    return service.retry_failed(request.lookback_hours, request.limit)


@router.get("/stats")
def delivery_stats(
    tenant_id: Optional[str] = Query(None),
    days: int = Query(30, ge=1, le=365),
    service: DeliveryService = Depends(get_delivery_service),
):
    return service.delivery_stats(tenant_id, days)
