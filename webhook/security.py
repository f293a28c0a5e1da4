"""
Webhook signature verification and subscription handshake.

Meta signs each delivery with X-Hub-Signature-256: sha256=<hex HMAC of the raw body>.
"""
import hashlib
import hmac
import logging
import string
from typing import Optional

from shared_utils.errors import InvalidSignatureError, VerificationError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
HEX_DIGEST_LENGTH = 64


def compute_signature(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(payload: bytes, signature_header: Optional[str], secret: str) -> bool:
    """
    Constant-time check of ``signature_header`` against the HMAC of ``payload``.
    Missing, malformed or mismatched signatures return False.
    """
    if not signature_header or not secret:
        return False

    provided = signature_header.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    provided = provided.lower()

    if len(provided) != HEX_DIGEST_LENGTH or any(c not in string.hexdigits for c in provided):
        return False

    expected = compute_signature(payload, secret)[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected, provided)


class SignatureValidator:
    """Fails closed when a secret is configured; skips (and says so) when none is."""

    def __init__(self, global_secret: Optional[str] = None):
        self.global_secret = global_secret

    def resolve_secret(self, tenant_secret: Optional[str] = None) -> Optional[str]:
        return tenant_secret or self.global_secret

    def validate(
        self,
        payload: bytes,
        signature_header: Optional[str],
        tenant_secret: Optional[str] = None,
    ) -> bool:
        """
        Returns True when the signature was checked and matched, False when
        no secret is configured. Raises InvalidSignatureError otherwise.
        """
        secret = self.resolve_secret(tenant_secret)
        if not secret:
            logger.warning("⚠️ No webhook secret configured - skipping signature validation")
            return False

        if not signature_header:
            raise InvalidSignatureError("Missing X-Hub-Signature-256 header")
        if not verify_signature(payload, signature_header, secret):
            raise InvalidSignatureError("Invalid webhook signature")
        return True


def verify_handshake(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: Optional[str],
) -> str:
    """Return the challenge verbatim for a valid subscribe request"""
    if mode != "subscribe":
        raise VerificationError(f"Invalid hub.mode: {mode}")
    if not expected_token or not token or not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise VerificationError("Verify token mismatch")
    if challenge is None:
        raise VerificationError("Missing hub.challenge")
    return challenge
