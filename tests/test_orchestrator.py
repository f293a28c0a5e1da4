"""
Tests for model orchestration: budget gate, primary/fallback and usage records.
"""
import json
from datetime import datetime, timedelta
from types import SimpleNamespace

import httpx
import pytest

from llm.client import LlmClient
from llm.knowledge import KnowledgeLookup
from llm.models import KnowledgeSnippet, LlmUsageRecord
from llm.orchestrator import ModelOrchestrator
from llm.pricing import calculate_cost, rate_for
from llm.prompts import APOLOGY_MESSAGE, BUDGET_EXCEEDED_MESSAGE, build_messages, build_system_prompt
from shared_utils.errors import BudgetExceeded
from shared_utils.retry import RetryPolicy

PHONE = "+14155550100"
FAST_RETRY = RetryPolicy(attempts=3, delay_ms=10, jitter_ms=0)


def completion(content="Your order ships tomorrow.", total_tokens=1000, model=None):
    body = {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": total_tokens - 100, "completion_tokens": 100, "total_tokens": total_tokens},
    }
    if model:
        body["model"] = model
    return body


class ModelBackend:
    """MockTransport handler answering per model with queued responses"""

    def __init__(self, responses):
        self.responses = {model: list(items) for model, items in responses.items()}
        self.calls = []

    def __call__(self, request):
        body = json.loads(request.content)
        self.calls.append(body["model"])
        status, payload = self.responses[body["model"]].pop(0)
        return httpx.Response(status, json=payload)


def make_orchestrator(db_session, settings, backend, no_sleep):
    client = LlmClient.from_settings(settings, transport=httpx.MockTransport(backend))
    return ModelOrchestrator(db_session, client, settings, retry_policy=FAST_RETRY, sleep=no_sleep)


class TestBudget:
    def test_budget_status_uses_tenant_limits(self, db_session, sample_tenant, settings, no_sleep):
        sample_tenant.daily_budget = 10.0
        db_session.add(LlmUsageRecord(tenant_id=sample_tenant.id, model="m", cost=2.5, created_at=datetime.utcnow()))
        db_session.add(LlmUsageRecord(
            tenant_id=sample_tenant.id, model="m", cost=7.0, created_at=datetime.utcnow() - timedelta(days=40)
        ))
        db_session.commit()

        status = make_orchestrator(db_session, settings, ModelBackend({}), no_sleep).budget_status(sample_tenant)

        assert status["daily_limit"] == 10.0
        assert status["monthly_limit"] == settings.default_monthly_budget
        assert status["spent_today"] == 2.5
        assert status["daily_exceeded"] is False

    def test_check_budget_raises(self, db_session, sample_tenant, settings, no_sleep):
        sample_tenant.monthly_budget = 1.0
        db_session.add(LlmUsageRecord(tenant_id=sample_tenant.id, model="m", cost=1.0, created_at=datetime.utcnow()))
        db_session.commit()

        with pytest.raises(BudgetExceeded) as exc_info:
            make_orchestrator(db_session, settings, ModelBackend({}), no_sleep).check_budget(sample_tenant)
        assert exc_info.value.period == "monthly"

    @pytest.mark.asyncio
    async def test_exceeded_budget_calls_no_model(self, db_session, sample_tenant, settings, no_sleep):
        sample_tenant.daily_budget = 5.0
        db_session.add(LlmUsageRecord(tenant_id=sample_tenant.id, model="m", cost=5.0, created_at=datetime.utcnow()))
        db_session.commit()
        backend = ModelBackend({})

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "Hi"
        )

        assert backend.calls == []
        assert reply.budget_exceeded is True
        assert reply.content == BUDGET_EXCEEDED_MESSAGE
        assert reply.cost == 0.0
        failed = db_session.query(LlmUsageRecord).filter(LlmUsageRecord.success.is_(False)).all()
        assert len(failed) == 1
        assert failed[0].cost == 0.0


class TestGenerateReply:
    @pytest.mark.asyncio
    async def test_primary_success(self, db_session, sample_tenant, settings, no_sleep):
        backend = ModelBackend({settings.llm_primary_model: [(200, completion(total_tokens=2000))]})

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "When does my order ship?"
        )

        assert reply.success is True
        assert reply.model_used == settings.llm_primary_model
        assert reply.cost == pytest.approx(2 * rate_for(settings.llm_primary_model))
        records = db_session.query(LlmUsageRecord).all()
        assert len(records) == 1
        assert records[0].total_tokens == 2000

    @pytest.mark.asyncio
    async def test_transient_primary_failures_fall_back(self, db_session, sample_tenant, settings, no_sleep):
        """Primary exhausts its retries; fallback answers and is the only cost."""
        primary, fallback = settings.llm_primary_model, settings.llm_fallback_model
        backend = ModelBackend({
            primary: [(503, {"error": "overloaded"})] * 3,
            fallback: [(200, completion(content="Fallback answer", total_tokens=1000))],
        })

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "Hello"
        )

        assert backend.calls == [primary, primary, primary, fallback]
        assert no_sleep.delays == [0.01, 0.02]
        assert reply.content == "Fallback answer"
        assert reply.model_used == f"{fallback} (fallback)"
        assert reply.is_fallback is True
        assert reply.cost == pytest.approx(calculate_cost(fallback, 1000))

        records = db_session.query(LlmUsageRecord).order_by(LlmUsageRecord.id).all()
        assert [(r.model, r.success) for r in records] == [(primary, False), (f"{fallback} (fallback)", True)]
        assert sum(r.cost for r in records) == pytest.approx(reply.cost)

    @pytest.mark.asyncio
    async def test_permanent_primary_failure_is_not_retried(self, db_session, sample_tenant, settings, no_sleep):
        primary, fallback = settings.llm_primary_model, settings.llm_fallback_model
        backend = ModelBackend({
            primary: [(400, {"error": "bad request"})],
            fallback: [(200, completion())],
        })

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "Hello"
        )

        assert backend.calls == [primary, fallback]
        assert reply.success is True

    @pytest.mark.asyncio
    async def test_both_models_failing_returns_apology(self, db_session, sample_tenant, settings, no_sleep):
        primary, fallback = settings.llm_primary_model, settings.llm_fallback_model
        backend = ModelBackend({
            primary: [(401, {"error": "unauthorized"})],
            fallback: [(200, {"choices": [{"message": {"content": "  "}}]})],
        })

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "Hello"
        )

        assert reply.success is False
        assert reply.content == APOLOGY_MESSAGE
        assert reply.model_used == "error_fallback"
        assert reply.cost == 0.0
        assert db_session.query(LlmUsageRecord).filter(LlmUsageRecord.success.is_(True)).count() == 0

    @pytest.mark.asyncio
    async def test_malformed_model_body_falls_back(self, db_session, sample_tenant, settings, no_sleep):
        """A 200 with a JSON list is a provider error: fallback runs and usage is recorded."""
        primary, fallback = settings.llm_primary_model, settings.llm_fallback_model
        backend = ModelBackend({
            primary: [(200, ["not", "an", "object"])],
            fallback: [(200, {"choices": "none", "usage": "n/a"})],
        })

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "Hello"
        )

        assert backend.calls == [primary, fallback]
        assert reply.content == APOLOGY_MESSAGE
        assert "malformed" in reply.error
        records = db_session.query(LlmUsageRecord).order_by(LlmUsageRecord.id).all()
        assert [(r.model, r.success) for r in records] == [(primary, False), (f"{fallback} (fallback)", False)]

    @pytest.mark.asyncio
    async def test_odd_usage_block_is_ignored(self, db_session, sample_tenant, settings, no_sleep):
        primary = settings.llm_primary_model
        body = {"choices": [{"message": {"content": "Hi there"}}], "usage": ["bogus"]}
        backend = ModelBackend({primary: [(200, body)]})

        reply = await make_orchestrator(db_session, settings, backend, no_sleep).generate_reply(
            sample_tenant, PHONE, "Hello"
        )

        assert reply.success is True
        assert reply.total_tokens == 0

    @pytest.mark.asyncio
    async def test_request_carries_history_and_knowledge(self, db_session, sample_tenant, settings, no_sleep):
        db_session.add(KnowledgeSnippet(
            tenant_id=sample_tenant.id, title="Shipping policy", content="Orders ship within 2 days."
        ))
        db_session.commit()
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json=completion())

        client = LlmClient.from_settings(settings, transport=httpx.MockTransport(handler))
        orchestrator = ModelOrchestrator(db_session, client, settings, retry_policy=FAST_RETRY, sleep=no_sleep)
        history = [
            SimpleNamespace(sender_type="customer", content="Hi"),
            SimpleNamespace(sender_type="ai", content="Hello! How can I help?"),
        ]

        await orchestrator.generate_reply(sample_tenant, PHONE, "What is your shipping time?", history=history)

        roles = [m["role"] for m in seen["messages"]]
        assert roles == ["system", "user", "assistant", "user"]
        assert "Orders ship within 2 days." in seen["messages"][0]["content"]
        assert seen["messages"][-1]["content"] == "What is your shipping time?"


class TestPromptsAndKnowledge:
    def test_history_is_capped(self):
        history = [SimpleNamespace(sender_type="customer", content=f"m{i}") for i in range(25)]
        messages = build_messages("sys", history, "latest")
        assert len(messages) == 12
        assert messages[1]["content"] == "m15"

    def test_system_prompt_includes_names(self):
        prompt = build_system_prompt("Candle Co", "Ada", ["Returns\nWithin 30 days"])
        assert "Candle Co" in prompt
        assert "Ada" in prompt
        assert "Within 30 days" in prompt

    def test_knowledge_ranks_title_matches_first(self, db_session, sample_tenant):
        db_session.add_all([
            KnowledgeSnippet(tenant_id=sample_tenant.id, title="Store hours", content="Refunds are not discussed here"),
            KnowledgeSnippet(tenant_id=sample_tenant.id, title="Refunds", content="Refunds take 5 days"),
            KnowledgeSnippet(tenant_id=sample_tenant.id, title="Careers", content="We are hiring"),
        ])
        db_session.commit()

        results = KnowledgeLookup(db_session).search(sample_tenant.id, "how do refunds work?")

        assert len(results) == 2
        assert results[0].startswith("Refunds\n")
