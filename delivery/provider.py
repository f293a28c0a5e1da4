"""
Outbound send client for the MSG91-style WhatsApp API.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from shared_utils.errors import PermanentProviderError, TransientProviderError
from shared_utils.retry import is_retryable_status
from .schema import SendRequest

logger = logging.getLogger(__name__)

SEND_ENDPOINT = "/whatsapp/send"


@dataclass
class ProviderResult:
    message_id: Optional[str]
    status: str = "sent"
    raw: Optional[Dict[str, Any]] = None


class ProviderClient:

    def __init__(
        self,
        base_url: str,
        auth_key: str,
        sender: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_key = auth_key
        self.sender = sender
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, transport=None) -> "ProviderClient":
        return cls(
            base_url=settings.provider_base_url,
            auth_key=settings.provider_auth_key,
            sender=settings.provider_sender,
            timeout=settings.provider_timeout,
            transport=transport,
        )

    def get_headers(self) -> Dict[str, str]:
        return {
            "authkey": self.auth_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def build_payload(self, request: SendRequest) -> Dict[str, Any]:
        payload = {
            "to": request.phone_number,
            "type": request.message_type,
            "message": request.message,
            "sender": self.sender,
        }

        if request.buttons:
            payload["interactive"] = {
                "type": "button",
                "body": {"text": request.message},
                "action": {
                    "buttons": [
                        {"type": button.type, "reply": {"id": f"btn_{index}", "title": button.text}}
                        for index, button in enumerate(request.buttons)
                    ]
                },
            }

        if request.media:
            payload["media"] = {
                "type": request.message_type,
                "url": request.media.url,
                "caption": request.media.caption,
                "filename": request.media.filename,
            }

        return payload

    async def send(self, request: SendRequest) -> ProviderResult:
        """
        One send attempt.

        Raises:
            TransientProviderError: network error, timeout, 5xx, 429, 408
            PermanentProviderError: other 4xx or an error reported in the body
        """
        url = f"{self.base_url}{SEND_ENDPOINT}"
        payload = self.build_payload(request)

        try:
            logger.info(f"🔄 Provider POST: {SEND_ENDPOINT} to {request.phone_number} ({request.message_type})")
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self.get_headers())
                response.raise_for_status()
                data = response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"❌ Provider send failed: HTTP {status_code} - {e.response.text[:200]}")
            if is_retryable_status(status_code):
                raise TransientProviderError(f"Provider HTTP {status_code}", status_code) from e
            raise PermanentProviderError(f"Provider HTTP {status_code}", status_code) from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Provider send failed: {type(e).__name__}: {e}")
            raise TransientProviderError(f"Provider request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise PermanentProviderError(f"Provider returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PermanentProviderError(f"Malformed provider response: expected an object, got {type(data).__name__}")
        if data.get("error") or data.get("type") == "error" or data.get("hasError"):
            reason = data.get("message") or data.get("error") or data.get("errors") or "Provider rejected message"
            raise PermanentProviderError(f"Provider error: {reason}")

        message_id = _extract_message_id(data)

        logger.info(f"✅ Provider accepted message for {request.phone_number} (id: {message_id})")
        return ProviderResult(message_id=message_id, status="sent", raw=data)


def _extract_message_id(data: Dict[str, Any]) -> Optional[str]:
    """Provider id from any of the response shapes the API uses; a wrongly shaped field is an error"""
    message_id = data.get("messageId") or data.get("requestId")
    if message_id:
        return str(message_id)

    messages = data.get("messages")
    if messages is not None:
        if not isinstance(messages, list) or any(not isinstance(m, dict) for m in messages):
            raise PermanentProviderError("Malformed provider response: 'messages' must be a list of objects")
        if messages and messages[0].get("id"):
            return str(messages[0]["id"])

    nested = data.get("data")
    if isinstance(nested, dict):
        nested_id = nested.get("messageId") or nested.get("requestId")
        return str(nested_id) if nested_id else None
    return None
