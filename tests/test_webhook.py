"""
Tests for the inbound webhook endpoint and processing pipeline.
"""
import hashlib
import hmac
import json
from datetime import datetime, timedelta

import pytest

from config.settings import get_settings
from conversations.models import Conversation, Message
from conversations.service import ConversationService
from jobs.models import Job
from jobs.queue import JobQueue, WEBHOOK_QUEUE
from models import Tenant
from sessions.models import InteractionSession
from webhook.models import WebhookLog
from webhook.service import (
    WebhookProcessor,
    enqueue_missing_replies,
    enqueue_reply,
    prune_webhook_logs,
    reply_dedupe_key,
    webhook_stats,
)

CUSTOMER = "14155550100"


def message_payload(*messages, statuses=None, display_phone="15550001111", name="Ada"):
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": display_phone, "phone_number_id": "123456"},
        "contacts": [{"wa_id": CUSTOMER, "profile": {"name": name}}],
        "messages": list(messages),
    }
    if statuses:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "waba-1", "changes": [{"field": "messages", "value": value}]}],
    }


def text_message(body, wamid="wamid.in1", sender=CUSTOMER):
    return {"from": sender, "id": wamid, "timestamp": "1767225600", "type": "text", "text": {"body": body}}


def encode(payload):
    return json.dumps(payload).encode("utf-8")


def signature(body, secret=None):
    secret = secret or get_settings().webhook_app_secret
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def post(client, payload, secret=None, raw=None):
    body = raw if raw is not None else encode(payload)
    return client.post(
        "/webhook",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": signature(body, secret)},
    )


class TestWebhookHandshake:
    def test_valid_handshake_echoes_challenge(self, client):
        resp = client.get("/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": get_settings().webhook_verify_token,
            "hub.challenge": "1158201444",
        })
        assert resp.status_code == 200
        assert resp.text == "1158201444"

    def test_wrong_token_is_forbidden(self, client):
        resp = client.get("/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "x",
        })
        assert resp.status_code == 403


class TestWebhookIngest:
    def test_text_message_creates_conversation_message_and_job(self, client, db_session, sample_tenant):
        resp = post(client, message_payload(text_message("When will my candles arrive?")))

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["processedMessages"] == 1

        conversation = db_session.query(Conversation).one()
        assert conversation.tenant_id == sample_tenant.id
        assert conversation.customer_phone == "+14155550100"
        assert conversation.customer_name == "Ada"

        message = db_session.query(Message).one()
        assert message.content == "When will my candles arrive?"
        assert message.sender_type == "customer"
        assert message.provider_message_id == "wamid.in1"

        job = db_session.query(Job).one()
        assert job.queue == WEBHOOK_QUEUE
        assert job.payload == {"inbound_message_id": message.id}
        assert body["messages"][0]["jobId"] == job.id

        session = db_session.query(InteractionSession).one()
        assert session.session_data["message_count"] == 1

    def test_image_without_caption(self, client, db_session, sample_tenant):
        image = {"from": CUSTOMER, "id": "wamid.img", "type": "image", "image": {"id": "media-1"}}
        resp = post(client, message_payload(image))

        assert resp.json()["status"] == "ok"
        message = db_session.query(Message).one()
        assert message.content == "[Image]"
        assert message.message_type == "image"

    def test_redelivery_is_idempotent(self, client, db_session, sample_tenant):
        payload = message_payload(text_message("Hello"))
        post(client, payload)
        resp = post(client, payload)

        assert resp.json()["messages"][0]["status"] == "duplicate"
        assert resp.json()["processedMessages"] == 0
        assert db_session.query(Message).count() == 1
        assert db_session.query(Job).count() == 1

    def test_no_tenant_drops_message_without_rows(self, client, db_session):
        resp = post(client, message_payload(text_message("Hi, where is my order #123")))

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "partial"
        assert body["messages"][0]["status"] == "dropped"
        assert db_session.query(Conversation).count() == 0
        assert db_session.query(Message).count() == 0
        assert db_session.query(Job).count() == 0

    def test_one_bad_message_does_not_block_the_rest(self, client, db_session, sample_tenant):
        bad = {"id": "wamid.bad", "type": "text", "text": {"body": "no sender"}}
        resp = post(client, message_payload(bad, text_message("fine", wamid="wamid.ok")))

        body = resp.json()
        assert body["status"] == "partial"
        assert [m["status"] for m in body["messages"]] == ["rejected", "processed"]
        assert db_session.query(Message).count() == 1

    def test_ai_disabled_conversation_gets_no_job(self, client, db_session, sample_conversation):
        ConversationService(db_session).toggle_ai(sample_conversation.id, False)

        post(client, message_payload(text_message("Human please")))

        assert db_session.query(Message).count() == 1
        assert db_session.query(Job).count() == 0

    def test_status_callbacks_update_outbound_messages(self, client, db_session, sample_conversation):
        service = ConversationService(db_session)
        reply = service.mark_sent(service.add_message(sample_conversation, "Shipped!", "ai"), "wamid.out1")

        payload = message_payload(statuses=[
            {"id": "wamid.out1", "status": "read", "timestamp": "1767225600", "recipient_id": CUSTOMER},
            {"id": "wamid.unknown", "status": "delivered"},
        ])
        resp = post(client, payload)

        assert resp.json()["processedStatuses"] == 1
        db_session.refresh(reply)
        assert reply.delivery_status == "read"


class TestWebhookRejections:
    def test_invalid_signature(self, client, db_session, sample_tenant):
        resp = post(client, message_payload(text_message("Hello")), secret="not-the-secret")

        assert resp.status_code == 200
        assert resp.json()["status"] == "invalid_signature"
        assert db_session.query(Message).count() == 0

        log = db_session.query(WebhookLog).one()
        assert log.is_valid is False
        assert log.status == "invalid_signature"

    def test_missing_signature(self, client, db_session, sample_tenant):
        resp = client.post("/webhook", content=encode(message_payload(text_message("Hello"))))
        assert resp.status_code == 200
        assert resp.json()["status"] == "invalid_signature"

    @pytest.mark.parametrize("raw", [b"not json", b"[]", b'{"object": "whatsapp_business_account"}'])
    def test_malformed_payload(self, client, db_session, raw):
        resp = post(client, None, raw=raw)

        assert resp.status_code == 200
        assert resp.json()["status"] == "invalid_payload"
        assert resp.json()["error"] == "Expected an object with an 'entry' list"

    def test_tenant_secret_signs_tenant_traffic(self, client, db_session, sample_tenant):
        sample_tenant.webhook_secret = "tenant-specific-secret"
        db_session.commit()
        payload = message_payload(text_message("Hello"))

        assert post(client, payload).json()["status"] == "invalid_signature"
        assert post(client, payload, secret="tenant-specific-secret").json()["status"] == "ok"

    def test_unsigned_traffic_rejected_while_a_tenant_has_a_secret(
        self, db_session, settings, session_cache, sample_tenant
    ):
        settings.webhook_app_secret = None
        sample_tenant.webhook_secret = "tenant-specific-secret"
        db_session.commit()
        payload = message_payload(text_message("Hello"))
        del payload["entry"][0]["changes"][0]["value"]["metadata"]

        result = WebhookProcessor(db_session, settings, session_cache).handle(encode(payload), None)

        assert result["status"] == "invalid_signature"
        assert db_session.query(Message).count() == 0
        assert db_session.query(WebhookLog).one().is_valid is False

    @pytest.mark.parametrize("display_phone", [None, "15559990000"])
    def test_global_signature_cannot_reach_a_secured_tenant(
        self, client, db_session, sample_conversation, display_phone
    ):
        db_session.get(Tenant, sample_conversation.tenant_id).webhook_secret = "tenant-specific-secret"
        db_session.commit()

        resp = post(client, message_payload(text_message("Hello"), display_phone=display_phone))

        body = resp.json()
        assert body["status"] == "partial"
        assert body["messages"][0]["status"] == "rejected"
        assert db_session.query(Message).count() == 0
        assert db_session.query(Job).count() == 0

    def test_unsecured_tenant_keeps_global_signature(self, client, db_session, sample_conversation):
        db_session.add(Tenant(
            id="other", organization="Other", routing_phone="+15550002222",
            webhook_secret="other-secret", verified=True,
        ))
        db_session.commit()

        resp = post(client, message_payload(text_message("Hello"), display_phone="15550002222"))

        assert resp.json()["status"] == "invalid_signature"
        resp = post(client, message_payload(text_message("Hello")))
        assert resp.json()["status"] == "ok"
        assert resp.json()["messages"][0]["tenantId"] == sample_conversation.tenant_id


class TestWebhookProcessor:
    def test_processing_error_is_reported_not_raised(self, db_session, settings, session_cache, sample_tenant, mocker):
        processor = WebhookProcessor(db_session, settings, session_cache)
        mocker.patch.object(processor, "process_payload", side_effect=RuntimeError("db exploded"))
        body = encode(message_payload(text_message("Hello")))

        result = processor.handle(body, signature(body, settings.webhook_app_secret))

        assert result["status"] == "error"
        assert "db exploded" not in result["error"]

    def test_no_secret_configured_still_processes(self, db_session, settings, session_cache, sample_tenant):
        settings.webhook_app_secret = None
        processor = WebhookProcessor(db_session, settings, session_cache)

        result = processor.handle(encode(message_payload(text_message("Hello"))), None)

        assert result["status"] == "ok"

    def test_sandbox_number_routes_to_test_tenant(self, db_session, settings, session_cache, sample_tenant):
        db_session.add(Tenant(id="sandbox", organization="Sandbox", verified=False))
        db_session.commit()
        settings.test_tenant_id = "sandbox"
        processor = WebhookProcessor(db_session, settings, session_cache)
        body = encode(message_payload(text_message("test", sender="15556485637")))

        result = processor.handle(body, signature(body, settings.webhook_app_secret))

        assert result["messages"][0]["tenantId"] == "sandbox"

    def test_large_payload_is_truncated_in_audit_log(self, db_session, settings, session_cache, sample_tenant):
        settings.webhook_log_max_payload_bytes = 64
        processor = WebhookProcessor(db_session, settings, session_cache)
        body = encode(message_payload(text_message("x" * 500)))

        processor.handle(body, signature(body, settings.webhook_app_secret))

        log = db_session.query(WebhookLog).one()
        assert log.payload_truncated is True
        assert len(log.payload["raw"]) <= 64

    def test_stats_and_pruning(self, db_session, settings, session_cache, sample_tenant):
        processor = WebhookProcessor(db_session, settings, session_cache)
        body = encode(message_payload(text_message("Hello")))
        processor.handle(body, signature(body, settings.webhook_app_secret))
        processor.handle(body, "sha256=" + "0" * 64)

        stats = webhook_stats(db_session, days=7)
        assert stats["total"] == 2
        assert stats["invalid_signatures"] == 1
        assert stats["processed_messages"] == 1

        assert prune_webhook_logs(db_session, retention_days=0) == 2

    def test_stats_endpoint_requires_auth(self, client, auth_headers):
        assert client.get("/webhook/stats").status_code == 401
        assert client.get("/webhook/stats", headers=auth_headers).status_code == 200

    def test_session_failure_keeps_message_and_reply_job(self, db_session, settings, session_cache, sample_tenant, mocker):
        processor = WebhookProcessor(db_session, settings, session_cache)
        mocker.patch.object(processor.sessions, "update", side_effect=ValueError("cache unavailable"))
        body = encode(message_payload(text_message("Hello")))

        result = processor.handle(body, signature(body, settings.webhook_app_secret))

        assert result["status"] == "ok"
        message = db_session.query(Message).one()
        job = db_session.query(Job).one()
        assert job.payload == {"inbound_message_id": message.id}
        assert result["messages"][0]["jobId"] == job.id


def stored_message(db, conversation, wamid, minutes_ago=5):
    message, _ = ConversationService(db).record_inbound_message(conversation, "Is my order shipped?", "text", wamid)
    message.created_at = datetime.utcnow() - timedelta(minutes=minutes_ago)
    db.commit()
    return message


class TestMissingReplySweep:
    def test_unreplied_message_gets_one_reply_job(self, db_session, sample_conversation):
        message = stored_message(db_session, sample_conversation, "wamid.lost")

        assert enqueue_missing_replies(db_session) == 1
        assert enqueue_missing_replies(db_session) == 0

        job = db_session.query(Job).one()
        assert job.queue == WEBHOOK_QUEUE
        assert job.dedupe_key == reply_dedupe_key(message.id)
        assert job.payload == {"inbound_message_id": message.id}
        assert job.ordering_key == f"conversation:{sample_conversation.id}"

    def test_handled_and_fresh_messages_are_left_alone(self, db_session, sample_conversation):
        service = ConversationService(db_session)
        replied = stored_message(db_session, sample_conversation, "wamid.replied")
        service.add_message(sample_conversation, "On its way!", "ai", reply_to_id=replied.id)

        failed = stored_message(db_session, sample_conversation, "wamid.failed")
        job = enqueue_reply(JobQueue(db_session), sample_conversation.id, failed.id)
        job.status = "failed"
        db_session.commit()

        stored_message(db_session, sample_conversation, "wamid.fresh", minutes_ago=0)
        stored_message(db_session, sample_conversation, "wamid.stale", minutes_ago=60 * 48)

        assert enqueue_missing_replies(db_session) == 0
        assert db_session.query(Job).count() == 1

    def test_ai_disabled_conversation_is_skipped(self, db_session, sample_conversation):
        ConversationService(db_session).toggle_ai(sample_conversation.id, False)
        stored_message(db_session, sample_conversation, "wamid.human")

        assert enqueue_missing_replies(db_session) == 0


class TestWebhookReprocessing:
    def test_errored_delivery_is_recovered_once(self, db_session, settings, session_cache, sample_tenant, mocker):
        failing = WebhookProcessor(db_session, settings, session_cache)
        mocker.patch.object(failing, "process_payload", side_effect=RuntimeError("db down"))
        body = encode(message_payload(text_message("Hello")))
        failing.handle(body, signature(body, settings.webhook_app_secret))
        assert db_session.query(WebhookLog).one().status == "error"

        processor = WebhookProcessor(db_session, settings, session_cache)
        summary = processor.reprocess_failed()

        assert summary == {"found": 1, "recovered": 1, "still_failing": 0, "skipped": 0}
        log = db_session.query(WebhookLog).one()
        assert log.status == "ok"
        assert log.processed is True
        assert log.processed_messages == 1
        assert log.reprocessed_at is not None
        assert db_session.query(Message).count() == 1
        assert db_session.query(Job).count() == 1

        assert processor.reprocess_failed()["found"] == 0

    def test_rejected_and_truncated_logs_are_not_replayed(self, db_session, settings, session_cache, sample_tenant):
        processor = WebhookProcessor(db_session, settings, session_cache)
        body = encode(message_payload(text_message("Hello")))
        processor.handle(body, "sha256=" + "0" * 64)
        db_session.add(WebhookLog(
            payload={"raw": body[:64].decode()}, payload_truncated=True, is_valid=True, status="error",
        ))
        db_session.commit()

        assert processor.reprocess_failed()["found"] == 0
        assert db_session.query(Message).count() == 0

    def test_replay_keeps_tenant_secret_check(self, db_session, settings, session_cache, sample_tenant):
        sample_tenant.webhook_secret = "tenant-specific-secret"
        db_session.commit()
        payload = message_payload(text_message("Hello"))
        del payload["entry"][0]["changes"][0]["value"]["metadata"]
        body = encode(payload)
        processor = WebhookProcessor(db_session, settings, session_cache)

        assert processor.handle(body, signature(body, settings.webhook_app_secret))["status"] == "partial"
        summary = processor.reprocess_failed()

        assert summary["still_failing"] == 1
        assert db_session.query(Message).count() == 0

    def test_replay_of_tenant_signed_delivery(self, db_session, settings, session_cache, sample_tenant, mocker):
        sample_tenant.webhook_secret = "tenant-specific-secret"
        db_session.commit()
        body = encode(message_payload(text_message("Hello")))
        failing = WebhookProcessor(db_session, settings, session_cache)
        mocker.patch.object(failing.conversations, "record_inbound_message", side_effect=RuntimeError("locked"))

        assert failing.handle(body, signature(body, "tenant-specific-secret"))["status"] == "partial"
        assert db_session.query(WebhookLog).one().signing_tenant_id == sample_tenant.id

        summary = WebhookProcessor(db_session, settings, session_cache).reprocess_failed()

        assert summary["recovered"] == 1
        assert db_session.query(Message).one().content == "Hello"

    def test_reprocess_endpoint_requires_auth(self, client, auth_headers):
        assert client.post("/webhook/reprocess-failed").status_code == 401
        resp = client.post("/webhook/reprocess-failed", params={"hours": 6}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["found"] == 0
