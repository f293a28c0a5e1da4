"""
Model orchestration: budget check -> primary model -> fallback model.

Every model invocation writes one LlmUsageRecord (success or failure). A
budget short-circuit writes a zero-cost failed record and calls no model.
Budget checks read committed usage, so two concurrent requests can both pass
just under the cap.
"""
import asyncio
import time
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Tenant
from shared_utils.errors import BudgetExceeded, ModelUnavailable, ProviderError
from shared_utils.retry import RetryPolicy, retry_with_backoff
from .client import ChatCompletion, LlmClient
from .knowledge import KnowledgeLookup
from .models import LlmUsageRecord
from .pricing import FALLBACK_SUFFIX, calculate_cost
from .prompts import (
    APOLOGY_MESSAGE,
    BUDGET_EXCEEDED_MESSAGE,
    MAX_KNOWLEDGE_SNIPPETS,
    build_messages,
    build_system_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL_RETRY = RetryPolicy(attempts=3, delay_ms=1000, backoff="exponential")


@dataclass
class ModelReply:
    content: str
    model_used: str
    success: bool
    cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    is_fallback: bool = False
    budget_exceeded: bool = False
    processing_time_ms: int = 0
    error: Optional[str] = None


class ModelOrchestrator:

    def __init__(
        self,
        db: Session,
        client: LlmClient,
        settings,
        retry_policy: RetryPolicy = DEFAULT_MODEL_RETRY,
        knowledge: Optional[KnowledgeLookup] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.client = client
        self.settings = settings
        self.retry_policy = retry_policy
        self.knowledge = knowledge if knowledge is not None else KnowledgeLookup(db)
        self.sleep = sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def _spent_since(self, tenant_id: str, since: datetime) -> float:
        total = (
            self.db.query(func.coalesce(func.sum(LlmUsageRecord.cost), 0.0))
            .filter(LlmUsageRecord.tenant_id == tenant_id, LlmUsageRecord.created_at >= since)
            .scalar()
        )
        return float(total or 0.0)

    def budget_status(self, tenant: Tenant) -> Dict:
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_start = day_start.replace(day=1)

        daily_limit = tenant.daily_budget if tenant.daily_budget is not None else self.settings.default_daily_budget
        monthly_limit = (
            tenant.monthly_budget if tenant.monthly_budget is not None else self.settings.default_monthly_budget
        )
        spent_today = self._spent_since(tenant.id, day_start)
        spent_month = self._spent_since(tenant.id, month_start)

        return {
            "tenant_id": tenant.id,
            "daily_limit": daily_limit,
            "monthly_limit": monthly_limit,
            "spent_today": round(spent_today, 6),
            "spent_month": round(spent_month, 6),
            "daily_exceeded": spent_today >= daily_limit,
            "monthly_exceeded": spent_month >= monthly_limit,
        }

    def check_budget(self, tenant: Tenant) -> Dict:
        status = self.budget_status(tenant)
        if status["daily_exceeded"]:
            raise BudgetExceeded(tenant.id, "daily", status["spent_today"], status["daily_limit"])
        if status["monthly_exceeded"]:
            raise BudgetExceeded(tenant.id, "monthly", status["spent_month"], status["monthly_limit"])
        return status

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_reply(
        self,
        tenant: Tenant,
        phone: str,
        user_message: str,
        history: Iterable = (),
        customer_name: Optional[str] = None,
        session_context: Optional[Dict] = None,
    ) -> ModelReply:
        started = time.monotonic()

        try:
            self.check_budget(tenant)
        except BudgetExceeded as e:
            logger.warning(f"💸 {e} - serving budget message", extra={"tenant_id": tenant.id})
            self._record_usage(tenant.id, phone, self.settings.llm_primary_model, success=False, error=str(e))
            return ModelReply(
                content=BUDGET_EXCEEDED_MESSAGE,
                model_used="budget_exceeded",
                success=False,
                budget_exceeded=True,
                processing_time_ms=self._elapsed_ms(started),
                error=str(e),
            )

        system_prompt = build_system_prompt(
            business_name=tenant.organization,
            customer_name=customer_name,
            snippets=self._knowledge_for(tenant.id, user_message),
            business_context=tenant.business_context,
            session_context=session_context,
        )
        messages = build_messages(system_prompt, history, user_message)

        try:
            return await self.complete_with_fallback(tenant.id, phone, messages, started)
        except ModelUnavailable as e:
            return ModelReply(
                content=APOLOGY_MESSAGE,
                model_used="error_fallback",
                success=False,
                processing_time_ms=self._elapsed_ms(started),
                error=str(e),
            )

    async def complete_with_fallback(self, tenant_id: str, phone: str, messages, started: float) -> ModelReply:
        """Primary model, then the fallback. Raises ModelUnavailable when neither answers."""
        primary = self.settings.llm_primary_model
        fallback = self.settings.llm_fallback_model
        errors = []

        try:
            completion, cost = await self._invoke(tenant_id, phone, primary, messages, is_fallback=False)
            return self._reply(completion, primary, cost, started, is_fallback=False)
        except ProviderError as e:
            errors.append(f"{primary}: {e}")
            logger.warning(f"⚠️ Primary model {primary} failed: {e}", extra={"tenant_id": tenant_id})

        if fallback and fallback != primary:
            try:
                completion, cost = await self._invoke(tenant_id, phone, fallback, messages, is_fallback=True)
                logger.info(f"✅ Fallback model {fallback} answered", extra={"tenant_id": tenant_id})
                return self._reply(completion, fallback + FALLBACK_SUFFIX, cost, started, is_fallback=True)
            except ProviderError as e:
                errors.append(f"{fallback}: {e}")
                logger.error(f"❌ Fallback model {fallback} failed: {e}", extra={"tenant_id": tenant_id})

        raise ModelUnavailable("; ".join(errors))

    async def _invoke(
        self, tenant_id: str, phone: str, model: str, messages, is_fallback: bool
    ) -> Tuple[ChatCompletion, float]:
        recorded_model = model + FALLBACK_SUFFIX if is_fallback else model

        async def call():
            return await self.client.chat(
                model,
                messages,
                max_tokens=self.settings.llm_max_tokens,
                temperature=self.settings.llm_temperature,
            )

        try:
            completion = await retry_with_backoff(call, self.retry_policy, sleep=self.sleep)
        except ProviderError as e:
            self._record_usage(tenant_id, phone, recorded_model, success=False, is_fallback=is_fallback, error=str(e))
            raise

        cost = calculate_cost(model, completion.total_tokens)
        self._record_usage(
            tenant_id,
            phone,
            recorded_model,
            success=True,
            is_fallback=is_fallback,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            total_tokens=completion.total_tokens,
            cost=cost,
        )
        return completion, cost

    def _reply(self, completion: ChatCompletion, model_used: str, cost: float, started: float, is_fallback: bool):
        return ModelReply(
            content=completion.content,
            model_used=model_used,
            success=True,
            cost=cost,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            total_tokens=completion.total_tokens,
            is_fallback=is_fallback,
            processing_time_ms=self._elapsed_ms(started),
        )

    def _knowledge_for(self, tenant_id: str, query: str):
        try:
            return self.knowledge.search(tenant_id, query, limit=MAX_KNOWLEDGE_SNIPPETS)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Knowledge lookup failed, continuing without snippets: {e}")
            return []

    def _record_usage(
        self,
        tenant_id: str,
        phone: Optional[str],
        model: str,
        success: bool,
        is_fallback: bool = False,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        total_tokens: int = 0,
        cost: float = 0.0,
        error: Optional[str] = None,
    ) -> None:
        try:
            self.db.add(LlmUsageRecord(
                tenant_id=tenant_id,
                phone_number=phone,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
                cost=cost,
                success=success,
                is_fallback=is_fallback,
                error=(error or None) and error[:1000],
                created_at=self.clock(),
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record LLM usage for tenant {tenant_id}: {e}")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
