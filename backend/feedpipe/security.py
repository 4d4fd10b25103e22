"""Security utilities for webhook signatures and connector credential encryption.

WHAT:
    - HMAC-SHA256 signing/verification shared by inbound Shopify webhooks and
      outbound feed webhooks.
    - Symmetric encryption for connector credentials (access tokens,
      WooCommerce consumer key/secret).

WHY:
    - One signature algorithm for both directions keeps verification consistent.
    - Credential encryption keeps source credentials out of plaintext storage.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - feedpipe/routers/shopify_webhooks.py
    - feedpipe/services/webhook_dispatcher.py
"""

import base64
import hashlib
import hmac
import json
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from .deps import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# HMAC SIGNATURES
# =============================================================================

def compute_hmac_signature(secret: str, body: bytes) -> str:
    """Return the base64-encoded HMAC-SHA256 of `body`."""
    return base64.b64encode(
        hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    ).decode("utf-8")


def verify_hmac_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check a base64 HMAC-SHA256 signature in constant time.

    Args:
        secret: Shared secret
        body: Raw request body bytes (never re-serialized JSON)
        signature: Header value as sent by the caller

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False

    computed = compute_hmac_signature(secret, body)
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(computed, signature.strip())


# =============================================================================
# CREDENTIAL ENCRYPTION
# =============================================================================

@lru_cache()
def _get_cipher() -> Fernet:
    key = get_settings().TOKEN_ENCRYPTION_KEY
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
            "or add it to backend/.env."
        )
    try:
        # Validate key length by decoding without storing plaintext material.
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a secret before persisting.

    Args:
        plaintext: Raw secret to encrypt.
        context:   Friendly label for logs (connector kind/domain).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a secret stored with `encrypt_secret`.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored credentials.") from exc


def encrypt_credentials(credentials: Dict[str, Any], *, context: str) -> Optional[str]:
    """Serialize and encrypt a connector credentials document."""
    if not credentials:
        return None
    return encrypt_secret(json.dumps(credentials, sort_keys=True), context=context)


def decrypt_credentials(ciphertext: Optional[str], *, context: str) -> Dict[str, Any]:
    """Reverse `encrypt_credentials`; empty input gives an empty document."""
    if not ciphertext:
        return {}
    return json.loads(decrypt_secret(ciphertext, context=context))
