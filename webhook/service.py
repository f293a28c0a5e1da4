"""
Inbound webhook pipeline.

validate signature -> parse -> per message: normalize, route, find-or-create
conversation, store inbound message, enqueue reply job, update session.
Status callbacks are reconciled against stored messages. A maintenance sweep
enqueues replies for stored messages that never got a reply job, and failed
deliveries can be reprocessed from the audit log.

handle() never raises: every outcome becomes a status in the response body
so the provider always gets a 200 and never retries (which would duplicate
processing). Each message is processed independently; one failure does not
stop the rest.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import String, cast, exists, func, literal
from sqlalchemy.orm import Session, aliased

from config.cache import SessionCache
from conversations.models import Conversation, Message, OPEN_STATUSES
from conversations.service import ConversationService
from delivery.provider import ProviderClient
from delivery.service import DeliveryService
from jobs.models import Job
from jobs.queue import JobQueue, WEBHOOK_QUEUE
from models import Tenant
from sessions.service import SessionService
from shared_utils.errors import InvalidSignatureError, MalformedPayloadError, RoutingError, ValidationError
from shared_utils.phone import normalize_phone
from tenants.routing import TenantRouter
from .models import WebhookLog
from .normalizer import normalize_message
from .security import SignatureValidator, verify_handshake

logger = logging.getLogger(__name__)

FAILED_MESSAGE_STATUSES = ("dropped", "rejected", "error")


@dataclass
class WebhookOutcome:
    status: str = "ok"
    processed_messages: int = 0
    processed_statuses: int = 0
    messages: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    signature_valid: bool = False
    # Passed the signature gate, either verified or with no secret configured anywhere
    authenticated: bool = False

    def to_response(self) -> Dict[str, Any]:
        body = {
            "status": self.status,
            "processedMessages": self.processed_messages,
            "processedStatuses": self.processed_statuses,
            "messages": self.messages,
        }
        if self.error:
            body["error"] = self.error
        return body


class WebhookProcessor:

    def __init__(self, db: Session, settings, cache: SessionCache, validator: Optional[SignatureValidator] = None):
        self.db = db
        self.settings = settings
        self.cache = cache
        self.validator = validator or SignatureValidator(settings.webhook_app_secret)
        self.conversations = ConversationService(db)
        self.sessions = SessionService(db, cache, settings.session_ttl_seconds)
        self.router = TenantRouter(
            db, settings.test_numbers, settings.test_tenant_id, settings.default_country_code
        )
        self.queue = JobQueue(db)
        # Tenant whose own secret signed the current delivery, if any
        self._verified_tenant_id: Optional[str] = None

    def verify(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        return verify_handshake(mode, token, challenge, self.settings.webhook_verify_token)

    def handle(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        outcome = WebhookOutcome()
        payload = None
        self._verified_tenant_id = None

        try:
            payload = _parse_json(raw_body)
            self.authenticate(raw_body, signature, payload, outcome)

            if not isinstance(payload, dict) or not isinstance(payload.get("entry"), list):
                raise MalformedPayloadError("Expected an object with an 'entry' list")
            self.process_payload(payload, outcome)
        except InvalidSignatureError as e:
            outcome.status = "invalid_signature"
            outcome.error = str(e)
            logger.warning(f"❌ Webhook rejected: {e}")
        except MalformedPayloadError as e:
            outcome.status = "invalid_payload"
            outcome.error = str(e)
            logger.warning(f"⚠️ Rejected malformed webhook payload ({len(raw_body)} bytes)")
        except Exception as e:
            self.db.rollback()
            outcome.status = "error"
            outcome.error = "Internal processing error"
            logger.error(f"❌ Webhook processing error: {e}", exc_info=True)

        self._audit(raw_body, payload, signature, outcome)
        return outcome.to_response()

    def authenticate(self, raw_body: bytes, signature: Optional[str], payload: Any, outcome: WebhookOutcome) -> None:
        """
        Check the signature against the secret of the tenant named in the
        change metadata, else the global secret. Unsigned traffic is only
        accepted while no secret exists anywhere.
        """
        signing_tenant = self._signing_tenant(payload)
        outcome.signature_valid = self.validator.validate(
            raw_body, signature, tenant_secret=signing_tenant.webhook_secret if signing_tenant else None
        )
        if outcome.signature_valid:
            self._verified_tenant_id = signing_tenant.id if signing_tenant else None
        elif self._any_tenant_secret():
            raise InvalidSignatureError("Missing signature for tenant-secured webhook")
        outcome.authenticated = True

    def process_payload(self, payload: Dict, outcome: WebhookOutcome) -> WebhookOutcome:
        for entry in payload.get("entry") or []:
            if not isinstance(entry, dict):
                continue
            for change in entry.get("changes") or []:
                if not isinstance(change, dict) or change.get("field") != "messages":
                    continue
                value = change.get("value") if isinstance(change.get("value"), dict) else {}

                contacts = _contact_names(value.get("contacts"))
                for raw_message in value.get("messages") or []:
                    result = self.process_message(raw_message, contacts)
                    outcome.messages.append(result)
                    if result["status"] == "processed":
                        outcome.processed_messages += 1

                if value.get("statuses"):
                    counts = self._delivery().reconcile_statuses(value["statuses"])
                    outcome.processed_statuses += counts["updated"]

        if any(m["status"] in FAILED_MESSAGE_STATUSES for m in outcome.messages):
            outcome.status = "partial"
        return outcome

    def process_message(self, raw_message: Any, contacts: Dict[str, str]) -> Dict[str, Any]:
        raw_message = raw_message if isinstance(raw_message, dict) else {}
        provider_id = raw_message.get("id")
        sender = raw_message.get("from")
        result = {"id": provider_id, "from": sender}

        try:
            phone = normalize_phone(sender, self.settings.default_country_code)
            if not phone:
                raise ValidationError("Message has no usable sender number")

            normalized = normalize_message(raw_message)
            decision = self.router.resolve(phone)
            if decision is None:
                raise RoutingError(phone)
            self._require_tenant_signature(decision.tenant_id)

            conversation = self.conversations.find_or_create_conversation(
                decision.tenant_id, phone, contacts.get(sender)
            )
            message, created = self.conversations.record_inbound_message(
                conversation, normalized.content, normalized.message_type, provider_id
            )
            result.update(conversationId=conversation.id, messageId=message.id, tenantId=decision.tenant_id)
            if not created:
                # Redelivery; re-enqueue only if the first delivery never got a reply going
                if conversation.ai_enabled and self.conversations.get_reply_for(message.id) is None:
                    enqueue_reply(self.queue, conversation.id, message.id)
                result["status"] = "duplicate"
                return result

            # Reply job right after the row is stored; enqueue_missing_replies covers a failure in between
            if conversation.ai_enabled:
                result["jobId"] = enqueue_reply(self.queue, conversation.id, message.id).id

            self.conversations.touch_inbound(conversation, _timestamp(raw_message.get("timestamp")))
            self._touch_session(phone, normalized.message_type)

            logger.info(
                f"📥 Stored {normalized.message_type} message {message.id} from {phone}",
                extra={"tenant_id": decision.tenant_id, "conversation_id": conversation.id},
            )
            result["status"] = "processed"
        except RoutingError as e:
            logger.warning(f"🚫 Dropping message {provider_id}: {e}")
            result.update(status="dropped", error=str(e))
        except ValidationError as e:
            logger.warning(f"⚠️ Rejected message {provider_id}: {e}")
            result.update(status="rejected", error=str(e))
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Error processing message {provider_id}: {e}", exc_info=True)
            result.update(status="error", error="Processing failed")
        return result

    def reprocess(self, log: WebhookLog) -> WebhookOutcome:
        """Run a stored delivery through the pipeline again under its original signature verdict"""
        outcome = WebhookOutcome(signature_valid=log.is_valid, authenticated=log.is_valid)
        self._verified_tenant_id = log.signing_tenant_id
        try:
            self.process_payload(log.payload, outcome)
        except Exception as e:
            self.db.rollback()
            outcome.status = "error"
            outcome.error = "Internal processing error"
            logger.error(f"❌ Reprocessing webhook log {log.id} failed: {e}", exc_info=True)

        log.status = outcome.status
        log.processed = outcome.status in ("ok", "partial")
        log.processed_messages = (log.processed_messages or 0) + outcome.processed_messages
        log.error = outcome.error
        log.reprocessed_at = datetime.utcnow()
        self.db.commit()
        return outcome

    def reprocess_failed(self, hours: int = 24, limit: int = 50) -> Dict[str, Any]:
        """
        Reprocess recent deliveries that errored or only partly succeeded.
        Rejected signatures and truncated payloads are never replayed, and each
        log is reprocessed at most once.
        """
        since = datetime.utcnow() - timedelta(hours=hours)
        logs = (
            self.db.query(WebhookLog)
            .filter(
                WebhookLog.status.in_(("error", "partial")),
                WebhookLog.is_valid.is_(True),
                WebhookLog.payload_truncated.is_(False),
                WebhookLog.reprocessed_at.is_(None),
                WebhookLog.created_at >= since,
            )
            .order_by(WebhookLog.created_at.desc())
            .limit(limit)
            .all()
        )

        summary = {"found": len(logs), "recovered": 0, "still_failing": 0, "skipped": 0}
        for log in logs:
            if not isinstance(log.payload, dict) or not isinstance(log.payload.get("entry"), list):
                summary["skipped"] += 1
                continue
            outcome = self.reprocess(log)
            if outcome.status == "ok":
                summary["recovered"] += 1
            else:
                summary["still_failing"] += 1

        if logs:
            logger.info(f"🔁 Reprocessed {len(logs)} webhook logs: {summary}")
        return summary

    def _touch_session(self, phone: str, message_type: str) -> None:
        # The message and its reply job are already stored; session state is secondary
        try:
            self.sessions.update(phone, context={"last_message_type": message_type}, increment_messages=True)
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Session update failed for {phone}: {e}")

    def _delivery(self) -> DeliveryService:
        return DeliveryService(self.db, ProviderClient.from_settings(self.settings), self.queue)

    def _require_tenant_signature(self, tenant_id: str) -> None:
        """A tenant with its own secret only accepts traffic signed with that secret"""
        tenant = self.db.get(Tenant, tenant_id)
        if tenant and tenant.webhook_secret and self._verified_tenant_id != tenant.id:
            raise InvalidSignatureError(f"Message for tenant {tenant_id} was not signed with its secret")

    def _any_tenant_secret(self) -> bool:
        return self.db.query(Tenant.id).filter(Tenant.webhook_secret.isnot(None), Tenant.webhook_secret != "").first() is not None

    def _signing_tenant(self, payload: Any) -> Optional[Tenant]:
        """Tenant with its own secret, keyed by the business number in the change metadata"""
        if not isinstance(payload, dict) or not isinstance(payload.get("entry"), list):
            return None
        for entry in payload["entry"]:
            for change in (entry.get("changes") or []) if isinstance(entry, dict) else []:
                value = change.get("value") if isinstance(change, dict) else None
                metadata = value.get("metadata") if isinstance(value, dict) else None
                if not isinstance(metadata, dict):
                    continue
                business_phone = normalize_phone(
                    metadata.get("display_phone_number"), self.settings.default_country_code
                )
                if not business_phone:
                    continue
                tenant = self.db.query(Tenant).filter(Tenant.routing_phone == business_phone).first()
                if tenant and tenant.webhook_secret:
                    return tenant
        return None

    def _audit(self, raw_body: bytes, payload: Any, signature: Optional[str], outcome: WebhookOutcome) -> None:
        """Best-effort audit row; a failure here never affects the response"""
        try:
            max_bytes = self.settings.webhook_log_max_payload_bytes
            truncated = len(raw_body) > max_bytes
            if truncated or payload is None:
                stored = {"raw": raw_body[:max_bytes].decode("utf-8", errors="replace")}
            else:
                stored = payload

            self.db.add(WebhookLog(
                source="whatsapp",
                payload=stored,
                payload_truncated=truncated,
                signature=(signature or None) and signature[:255],
                is_valid=outcome.authenticated,
                processed=outcome.status in ("ok", "partial"),
                status=outcome.status,
                processed_messages=outcome.processed_messages,
                error=outcome.error,
                signing_tenant_id=self._verified_tenant_id,
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to write webhook log: {e}")


def webhook_stats(db: Session, days: int = 7) -> Dict[str, Any]:
    since = datetime.utcnow() - timedelta(days=days)
    base = db.query(WebhookLog).filter(WebhookLog.created_at >= since)
    by_status = dict(
        base.with_entities(WebhookLog.status, func.count(WebhookLog.id)).group_by(WebhookLog.status).all()
    )
    total = sum(by_status.values())
    messages = base.with_entities(func.coalesce(func.sum(WebhookLog.processed_messages), 0)).scalar()
    return {
        "period_days": days,
        "total": total,
        "by_status": by_status,
        "invalid_signatures": by_status.get("invalid_signature", 0),
        "processed_messages": int(messages or 0),
        "success_rate": round((by_status.get("ok", 0) + by_status.get("partial", 0)) / total, 4) if total else 0.0,
    }


def prune_webhook_logs(db: Session, retention_days: int = 30) -> int:
    cutoff = datetime.utcnow() - timedelta(days=retention_days)
    removed = db.query(WebhookLog).filter(WebhookLog.created_at < cutoff).delete(synchronize_session=False)
    db.commit()
    if removed:
        logger.info(f"🧹 Pruned {removed} webhook logs older than {retention_days} days")
    return removed


def reply_dedupe_key(message_id: int) -> str:
    return f"reply:message:{message_id}"


def enqueue_reply(queue: JobQueue, conversation_id: int, message_id: int) -> Job:
    return queue.enqueue(
        WEBHOOK_QUEUE,
        "generate_reply",
        {"inbound_message_id": message_id},
        ordering_key=f"conversation:{conversation_id}",
        dedupe_key=reply_dedupe_key(message_id),
    )


def enqueue_missing_replies(
    db: Session,
    lookback_hours: int = 24,
    settle_seconds: int = 60,
    limit: int = 100,
) -> int:
    """
    Enqueue generate_reply for customer messages in AI-enabled conversations
    that have no reply and never had a reply job. Messages younger than
    ``settle_seconds`` are left to the webhook that is still storing them.
    """
    now = datetime.utcnow()
    reply = aliased(Message)
    missing = (
        db.query(Message)
        .join(Conversation, Message.conversation_id == Conversation.id)
        .filter(
            Message.sender_type == "customer",
            Message.created_at >= now - timedelta(hours=lookback_hours),
            Message.created_at <= now - timedelta(seconds=settle_seconds),
            Conversation.ai_enabled.is_(True),
            Conversation.status.in_(OPEN_STATUSES),
            ~exists().where(reply.reply_to_id == Message.id),
            ~exists().where(Job.dedupe_key == literal("reply:message:").concat(cast(Message.id, String))),
        )
        .order_by(Message.id)
        .limit(limit)
        .all()
    )

    queue = JobQueue(db)
    for message in missing:
        enqueue_reply(queue, message.conversation_id, message.id)
    if missing:
        logger.warning(f"🩹 Enqueued {len(missing)} replies for messages stored without a reply job")
    return len(missing)


def _parse_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, ValueError):
        return None


def _contact_names(contacts: Any) -> Dict[str, str]:
    names = {}
    for contact in contacts or []:
        if not isinstance(contact, dict):
            continue
        profile = contact.get("profile") if isinstance(contact.get("profile"), dict) else {}
        if contact.get("wa_id") and profile.get("name"):
            names[contact["wa_id"]] = profile["name"]
    return names


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
