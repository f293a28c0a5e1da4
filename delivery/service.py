"""
Outbound delivery: inline sends with retry, scheduled sends through the
message-delivery queue, bulk batches, failed-message retry and provider
status reconciliation.
"""
import asyncio
import time
import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from conversations.models import Conversation, Message
from conversations.service import ConversationService
from jobs.models import Job
from jobs.queue import DELIVERY_QUEUE, JobQueue
from shared_utils.errors import ProviderError
from shared_utils.retry import RetryPolicy, is_retryable_error, retry_with_backoff
from .provider import ProviderClient
from .schema import BulkReport, BulkSendRequest, DeliveryResult, SendRequest

logger = logging.getLogger(__name__)

PRIORITY = {"urgent": 10, "high": 7, "normal": 5, "low": 1}
PROVIDER_STATUSES = ("sent", "delivered", "read", "failed")
SENT_STATUSES = ("sent", "delivered", "read")

DEFAULT_DELIVERY_RETRY = RetryPolicy(attempts=3, delay_ms=1000, backoff="exponential")


def delivery_dedupe_key(message_id: int) -> str:
    return f"deliver:message:{message_id}"


def generate_batch_id() -> str:
    return f"bulk_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class DeliveryService:

    def __init__(
        self,
        db: Session,
        provider: ProviderClient,
        queue: Optional[JobQueue] = None,
        retry_policy: RetryPolicy = DEFAULT_DELIVERY_RETRY,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.provider = provider
        self.queue = queue or JobQueue(db, clock=clock)
        self.conversations = ConversationService(db)
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Single sends
    # ------------------------------------------------------------------

    async def send_message(self, request: SendRequest) -> DeliveryResult:
        """Send now, or enqueue when ``scheduled_at`` is in the future."""
        if request.scheduled_at and request.scheduled_at > self.clock():
            job = self.schedule_message(request, request.scheduled_at)
            return DeliveryResult(
                phone_number=request.phone_number,
                success=True,
                status="scheduled",
                job_id=job.id,
            )
        return await self.deliver(request)

    def schedule_message(self, request: SendRequest, send_at: datetime) -> Job:
        payload = request.model_dump(mode="json", exclude={"scheduled_at"})
        dedupe_key = delivery_dedupe_key(request.message_id) if request.message_id else None
        job = self.queue.enqueue(
            DELIVERY_QUEUE,
            "send_message",
            payload,
            priority=PRIORITY[request.priority],
            run_at=max(send_at, self.clock()),
            dedupe_key=dedupe_key,
        )
        logger.info(f"📅 Scheduled message to {request.phone_number} for {send_at} (job {job.id})")
        return job

    async def deliver(self, request: SendRequest, message: Optional[Message] = None) -> DeliveryResult:
        """
        Call the provider with bounded retries. When the send is for a stored
        message, that row is marked sent (with the provider id) or failed.
        """
        if message is None and request.message_id:
            message = self.db.get(Message, request.message_id)

        if message is not None and message.delivery_status in SENT_STATUSES:
            # The provider may accept a message without returning an id; the status alone decides
            logger.info(f"Message {message.id} already {message.delivery_status} (id {message.provider_message_id}), skipping")
            return DeliveryResult(
                phone_number=request.phone_number,
                success=True,
                status="already_sent",
                message_id=message.provider_message_id,
            )

        attempts = {"count": 1}

        def count_retry(error, attempt):
            attempts["count"] = attempt + 1

        try:
            result = await retry_with_backoff(
                lambda: self.provider.send(request),
                self.retry_policy,
                on_retry=count_retry,
                sleep=self.sleep,
            )
        except ProviderError as e:
            logger.error(f"❌ Delivery to {request.phone_number} failed after {attempts['count']} attempts: {e}")
            if message is not None:
                self.conversations.mark_failed(message, str(e))
            return DeliveryResult(
                phone_number=request.phone_number,
                success=False,
                status="failed",
                attempts=attempts["count"],
                error=str(e),
                retryable=is_retryable_error(e),
            )

        if message is not None:
            self.conversations.mark_sent(message, result.message_id)

        return DeliveryResult(
            phone_number=request.phone_number,
            success=True,
            status="sent",
            message_id=result.message_id,
            attempts=attempts["count"],
        )

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    async def send_bulk(self, request: BulkSendRequest) -> BulkReport:
        """
        Fixed-size batches, bounded concurrency inside a batch and a pause
        between batches. One result per recipient, in input order.
        """
        started = time.monotonic()
        batch_id = generate_batch_id()
        phones = list(request.phone_numbers)
        batches = [phones[i:i + request.batch_size] for i in range(0, len(phones), request.batch_size)]
        semaphore = asyncio.Semaphore(request.concurrency)

        logger.info(
            f"📤 Bulk send {batch_id}: {len(phones)} recipients in {len(batches)} batches "
            f"(size {request.batch_size}, delay {request.batch_delay_ms}ms)"
        )

        async def send_one(phone: str) -> DeliveryResult:
            try:
                single = SendRequest(
                    phone_number=phone,
                    message=request.message,
                    message_type=request.message_type,
                    media=request.media,
                )
            except PydanticValidationError as e:
                return DeliveryResult(phone_number=phone, success=False, status="failed", error=str(e.errors()[0]["msg"]))
            async with semaphore:
                try:
                    return await self.deliver(single)
                except Exception as e:
                    logger.error(f"❌ Bulk send to {phone} failed unexpectedly: {type(e).__name__}: {e}", exc_info=True)
                    return DeliveryResult(phone_number=phone, success=False, status="failed", error=f"Unexpected error: {type(e).__name__}")

        results: List[DeliveryResult] = []
        for index, batch in enumerate(batches, start=1):
            batch_results = await asyncio.gather(*(send_one(phone) for phone in batch))
            results.extend(batch_results)
            logger.info(
                f"Bulk {batch_id} batch {index}/{len(batches)}: "
                f"{sum(1 for r in batch_results if r.success)}/{len(batch)} sent"
            )
            if index < len(batches) and request.batch_delay_ms > 0:
                await self.sleep(request.batch_delay_ms / 1000.0)

        success_count = sum(1 for r in results if r.success)
        report = BulkReport(
            batch_id=batch_id,
            total=len(phones),
            success_count=success_count,
            failure_count=len(results) - success_count,
            batches=len(batches),
            duration_ms=int((time.monotonic() - started) * 1000),
            results=results,
        )
        logger.info(f"✅ Bulk send {batch_id} complete: {report.success_count} sent, {report.failure_count} failed")
        return report

    # ------------------------------------------------------------------
    # Retry + reconciliation
    # ------------------------------------------------------------------

    def enqueue_stored_message(self, message: Message, priority: int = PRIORITY["normal"]) -> Job:
        conversation = message.conversation
        return self.queue.enqueue(
            DELIVERY_QUEUE,
            "send_message",
            {"message_id": message.id},
            priority=priority,
            ordering_key=f"conversation:{conversation.id}" if conversation else None,
            dedupe_key=delivery_dedupe_key(message.id),
        )

    def retry_failed(self, lookback_hours: int = 24, limit: int = 50) -> Dict[str, int]:
        """Re-enqueue recently failed outbound messages at high priority"""
        since = self.clock() - timedelta(hours=lookback_hours)
        failed = self.conversations.find_failed_outbound(since, limit)

        requeued = 0
        skipped = 0
        for message in failed:
            if self.queue.find_live(delivery_dedupe_key(message.id)):
                skipped += 1
                continue
            self.enqueue_stored_message(message, priority=PRIORITY["high"])
            requeued += 1

        logger.info(f"🔁 Retry failed: {requeued} re-enqueued, {skipped} already queued (window {lookback_hours}h)")
        return {"found": len(failed), "requeued": requeued, "skipped": skipped}

    def reconcile_statuses(self, statuses: Iterable[Dict]) -> Dict[str, int]:
        """
        Apply provider status callbacks. Unknown ids and bad entries are
        logged and counted, never raised.
        """
        counts = {"updated": 0, "unknown": 0, "ignored": 0, "errors": 0}

        for entry in statuses or []:
            try:
                if not isinstance(entry, dict):
                    counts["ignored"] += 1
                    continue

                provider_id = entry.get("id")
                status = entry.get("status")
                if not provider_id or status not in PROVIDER_STATUSES:
                    logger.info(f"Ignoring status callback {provider_id}: {status}")
                    counts["ignored"] += 1
                    continue

                error = None
                errors = entry.get("errors") or []
                if errors and isinstance(errors[0], dict):
                    error = errors[0].get("title") or errors[0].get("message")

                matched = self.conversations.update_delivery_status(
                    provider_id, status, timestamp=_parse_timestamp(entry.get("timestamp")), error=error
                )
                counts["updated" if matched else "unknown"] += 1
            except Exception as e:
                self.db.rollback()
                counts["errors"] += 1
                logger.error(f"Error processing status callback {entry!r:.200}: {e}")

        return counts

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def delivery_stats(self, tenant_id: Optional[str] = None, days: int = 30) -> Dict:
        since = self.clock() - timedelta(days=days)
        query = (
            self.db.query(Message.delivery_status, func.count(Message.id))
            .filter(Message.sender_type.in_(("ai", "agent")), Message.created_at >= since)
        )
        if tenant_id:
            query = query.join(Conversation, Message.conversation_id == Conversation.id).filter(
                Conversation.tenant_id == tenant_id
            )
        counts = dict(query.group_by(Message.delivery_status).all())

        total = sum(counts.values())
        delivered = counts.get("delivered", 0) + counts.get("read", 0)
        return {
            "period_days": days,
            "total": total,
            "by_status": {status: counts.get(status, 0) for status in ("pending", "sent", "delivered", "read", "failed")},
            "delivery_rate": round(delivered / total, 4) if total else 0.0,
            "failure_rate": round(counts.get("failed", 0) / total, 4) if total else 0.0,
        }


def _parse_timestamp(value) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
