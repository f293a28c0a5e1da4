"""
Chat-completions client for an OpenRouter-compatible model backend.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from shared_utils.errors import PermanentProviderError, TransientProviderError
from shared_utils.retry import is_retryable_status

logger = logging.getLogger(__name__)


@dataclass
class ChatCompletion:
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LlmClient:

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        app_url: Optional[str] = None,
        app_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.app_url = app_url
        self.app_name = app_name
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, transport=None) -> "LlmClient":
        return cls(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            timeout=settings.llm_timeout,
            app_url=settings.app_url,
            app_name=settings.app_name,
            transport=transport,
        )

    def get_headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 500,
        temperature: float = 0.7,
    ) -> ChatCompletion:
        """
        One chat-completion request; timeouts apply per call.

        Raises:
            TransientProviderError: network error, timeout, 5xx, 429, 408
            PermanentProviderError: other 4xx or an unusable response body
        """
        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self.get_headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"❌ Model {model} returned HTTP {status_code}: {e.response.text[:200]}")
            if is_retryable_status(status_code):
                raise TransientProviderError(f"Model API HTTP {status_code}", status_code) from e
            raise PermanentProviderError(f"Model API HTTP {status_code}", status_code) from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Model {model} request failed: {type(e).__name__}: {e}")
            raise TransientProviderError(f"Model API request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise PermanentProviderError(f"Model API returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PermanentProviderError(f"Model {model} returned a malformed response ({type(data).__name__})")

        content = _first_choice_content(data.get("choices"))
        if content is None:
            raise PermanentProviderError(f"Model {model} returned a malformed response (no choices[0].message.content)")
        if not content.strip():
            raise PermanentProviderError(f"Model {model} returned an empty response")

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        prompt_tokens = _token_count(usage.get("prompt_tokens"))
        completion_tokens = _token_count(usage.get("completion_tokens"))
        total_tokens = _token_count(usage.get("total_tokens")) or (prompt_tokens + completion_tokens)

        return ChatCompletion(
            content=content.strip(),
            model=data.get("model") if isinstance(data.get("model"), str) and data.get("model") else model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )


def _first_choice_content(choices) -> Optional[str]:
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if content is None:
        return ""
    return content if isinstance(content, str) else None


def _token_count(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0
