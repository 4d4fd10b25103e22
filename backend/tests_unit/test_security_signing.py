"""
Signing and Credential Encryption Tests (Unit)
==============================================

WHAT: HMAC-SHA256 signing/verification and Fernet credential encryption.
WHY: Inbound Shopify webhooks and outbound feed webhooks share the signature
     helpers; connector credentials must never be stored in plaintext.

REFERENCES:
- backend/feedpipe/security.py
"""

import os

# Ensure feedpipe.security can import without a configured .env.
# This key decodes to 32 bytes and is only used to satisfy import-time validation.
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import base64
import hashlib
import hmac

import pytest

from feedpipe.security import (
    compute_hmac_signature,
    decrypt_credentials,
    decrypt_secret,
    encrypt_credentials,
    encrypt_secret,
    verify_hmac_signature,
)


class TestHmacSignatures:

    def test_signature_is_base64_hmac_sha256(self):
        body = b'{"id": 1}'
        expected = base64.b64encode(hmac.new(b"secret", body, hashlib.sha256).digest()).decode()

        assert compute_hmac_signature("secret", body) == expected

    def test_verify_accepts_valid_signature(self):
        body = b'{"id": 1}'
        assert verify_hmac_signature("secret", body, compute_hmac_signature("secret", body))

    def test_verify_rejects_tampered_body(self):
        signature = compute_hmac_signature("secret", b'{"id": 1}')
        assert not verify_hmac_signature("secret", b'{"id": 2}', signature)

    def test_verify_rejects_wrong_secret(self):
        body = b"payload"
        assert not verify_hmac_signature("other", body, compute_hmac_signature("secret", body))

    def test_verify_rejects_missing_signature(self):
        assert not verify_hmac_signature("secret", b"payload", None)
        assert not verify_hmac_signature("secret", b"payload", "")


class TestCredentialEncryption:

    def test_credentials_round_trip_without_plaintext(self):
        ciphertext = encrypt_credentials({"access_token": "shpat_abc"}, context="shopify:demo")

        assert "shpat_abc" not in ciphertext
        assert decrypt_credentials(ciphertext, context="shopify:demo") == {"access_token": "shpat_abc"}

    def test_empty_credentials(self):
        assert encrypt_credentials({}, context="csv") is None
        assert decrypt_credentials(None, context="csv") == {}

    def test_empty_secret_is_rejected(self):
        with pytest.raises(ValueError):
            encrypt_secret("", context="test")

    def test_invalid_ciphertext_raises_value_error(self):
        with pytest.raises(ValueError, match="Unable to decrypt"):
            decrypt_secret("not-a-fernet-token", context="test")
