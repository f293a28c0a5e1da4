"""
Tests for webhook signature validation and the subscription handshake.
"""
import hashlib
import hmac

import pytest

from shared_utils.errors import InvalidSignatureError, VerificationError
from webhook.security import SignatureValidator, compute_signature, verify_handshake, verify_signature

SECRET = "test_app_secret"
BODY = b'{"object":"whatsapp_business_account","entry":[]}'


def sign(body, secret=SECRET):
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestVerifySignature:
    def test_valid_signature(self):
        assert verify_signature(BODY, sign(BODY), SECRET) is True

    def test_compute_signature_matches_hmac(self):
        assert compute_signature(BODY, SECRET) == sign(BODY)

    def test_header_without_prefix_is_accepted(self):
        assert verify_signature(BODY, sign(BODY)[len("sha256="):], SECRET) is True

    def test_uppercase_hex_is_accepted(self):
        header = "sha256=" + sign(BODY)[len("sha256="):].upper()
        assert verify_signature(BODY, header, SECRET) is True

    def test_single_byte_change_fails(self):
        """Flipping one byte of the body invalidates the signature."""
        tampered = BODY.replace(b"[]", b"[1]")
        assert verify_signature(tampered, sign(BODY), SECRET) is False

    def test_wrong_secret_fails(self):
        assert verify_signature(BODY, sign(BODY, "other"), SECRET) is False

    @pytest.mark.parametrize("header", [None, "", "sha256=", "sha256=abc", "sha256=" + "z" * 64, "md5=" + "0" * 32])
    def test_malformed_headers_fail(self, header):
        assert verify_signature(BODY, header, SECRET) is False

    def test_non_ascii_header_fails_without_raising(self):
        assert verify_signature(BODY, "sha256=" + "é" * 64, SECRET) is False


class TestSignatureValidator:
    def test_no_secret_skips_validation(self):
        validator = SignatureValidator(None)
        assert validator.validate(BODY, None) is False

    def test_missing_header_raises_when_secret_configured(self):
        with pytest.raises(InvalidSignatureError):
            SignatureValidator(SECRET).validate(BODY, None)

    def test_invalid_signature_raises(self):
        with pytest.raises(InvalidSignatureError):
            SignatureValidator(SECRET).validate(BODY, sign(BODY, "wrong"))

    def test_tenant_secret_takes_precedence(self):
        validator = SignatureValidator(SECRET)
        assert validator.validate(BODY, sign(BODY, "tenant_secret"), tenant_secret="tenant_secret") is True
        with pytest.raises(InvalidSignatureError):
            validator.validate(BODY, sign(BODY), tenant_secret="tenant_secret")


class TestHandshake:
    def test_valid_handshake_returns_challenge(self):
        assert verify_handshake("subscribe", "tok", "1158201444", "tok") == "1158201444"

    def test_wrong_mode(self):
        with pytest.raises(VerificationError):
            verify_handshake("unsubscribe", "tok", "c", "tok")

    def test_wrong_token(self):
        with pytest.raises(VerificationError):
            verify_handshake("subscribe", "nope", "c", "tok")

    def test_no_configured_token(self):
        with pytest.raises(VerificationError):
            verify_handshake("subscribe", "tok", "c", None)
