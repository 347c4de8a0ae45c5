from __future__ import annotations

import hashlib
import hmac

from entitlement_sync.models.subscriptions import Installation


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, presented_signature: str | None, installation: Installation) -> bool:
    """HMAC-SHA256 over the exact raw body, compared in constant time.

    An installation without a secret is unsecured and always passes; the caller logs that.
    A configured secret with no presented signature always fails.
    """
    if installation.is_unsecured:
        return True
    if not presented_signature:
        return False
    expected = compute_signature(raw_body, installation.webhook_secret or "")
    return hmac.compare_digest(expected, presented_signature.strip().lower())
