import os
import logging
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_TEST_NUMBER = "+15556485637"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings:
    """
    Runtime configuration read from the environment.

    Keyword arguments override individual values, which is how tests build a
    settings object without touching os.environ.
    """

    def __init__(self, **overrides):
        # Storage
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./pipeline.db")
        self.redis_url = os.getenv("REDIS_URL")

        # Webhook
        self.webhook_app_secret = os.getenv("WHATSAPP_APP_SECRET")
        self.webhook_verify_token = os.getenv("WHATSAPP_VERIFY_TOKEN")
        self.webhook_log_retention_days = int(os.getenv("WEBHOOK_LOG_RETENTION_DAYS", "30"))
        self.webhook_log_max_payload_bytes = int(os.getenv("WEBHOOK_LOG_MAX_PAYLOAD_BYTES", "65536"))

        # Tenant routing
        self.test_numbers = _env_list("WHATSAPP_TEST_NUMBERS", os.getenv("WHATSAPP_TEST_NUMBER", DEFAULT_TEST_NUMBER))
        self.test_tenant_id = os.getenv("TEST_TENANT_ID")
        self.default_country_code = os.getenv("DEFAULT_COUNTRY_CODE", "1")

        # Outbound provider (MSG91-style send API)
        self.provider_base_url = os.getenv("PROVIDER_BASE_URL", "https://control.msg91.com/api/v5")
        self.provider_auth_key = os.getenv("PROVIDER_AUTH_KEY", "")
        self.provider_sender = os.getenv("PROVIDER_SENDER", "")
        self.provider_timeout = float(os.getenv("PROVIDER_TIMEOUT", "30"))
        self.bulk_batch_size = int(os.getenv("BULK_BATCH_SIZE", "100"))
        self.bulk_batch_delay_ms = int(os.getenv("BULK_BATCH_DELAY_MS", "1000"))
        self.bulk_concurrency = int(os.getenv("BULK_CONCURRENCY", "10"))

        # Model backend (OpenRouter-compatible chat completions)
        self.llm_base_url = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
        self.llm_api_key = os.getenv("OPENROUTER_API_KEY", "")
        self.llm_primary_model = os.getenv("PRIMARY_MODEL", "anthropic/claude-3-sonnet")
        self.llm_fallback_model = os.getenv("FALLBACK_MODEL", "openai/gpt-3.5-turbo")
        self.llm_max_tokens = int(os.getenv("LLM_MAX_TOKENS", "500"))
        self.llm_temperature = float(os.getenv("LLM_TEMPERATURE", "0.7"))
        self.llm_timeout = float(os.getenv("LLM_TIMEOUT", "30"))
        self.app_url = os.getenv("APP_URL", "http://localhost:8000")
        self.app_name = os.getenv("APP_NAME", "Message Pipeline")

        # Budgets (USD)
        self.default_daily_budget = float(os.getenv("DEFAULT_DAILY_BUDGET", "100"))
        self.default_monthly_budget = float(os.getenv("DEFAULT_MONTHLY_BUDGET", "1000"))

        # Sessions
        self.session_ttl_seconds = int(os.getenv("SESSION_TTL_SECONDS", "3600"))

        # Jobs
        self.job_worker_enabled = _env_bool("JOB_WORKER_ENABLED", "true")
        self.job_poll_interval_seconds = int(os.getenv("JOB_POLL_INTERVAL_SECONDS", "2"))
        self.job_stale_timeout_minutes = int(os.getenv("JOB_STALE_TIMEOUT_MINUTES", "10"))

        # Management API auth
        self.jwt_secret = os.getenv("JWT_SECRET_KEY", "CHANGE_THIS_TO_A_LONG_RANDOM_STRING")
        self.jwt_algorithm = "HS256"
        self.service_keys = {
            "django": os.getenv("DJANGO_SERVICE_KEY"),
            "fastapi": os.getenv("FASTAPI_SERVICE_KEY"),
            "nodejs": os.getenv("NODEJS_SERVICE_KEY"),
        }
        self.cors_origins = _env_list("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    if settings.jwt_secret == "CHANGE_THIS_TO_A_LONG_RANDOM_STRING":
        logger.warning("⚠️ WARNING: Using default JWT_SECRET. Set JWT_SECRET_KEY in .env for production!")
    if not settings.webhook_app_secret:
        logger.warning("⚠️ WHATSAPP_APP_SECRET not set - webhook signatures will not be verified")
    return settings
