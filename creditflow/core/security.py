import hashlib
import hmac
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from creditflow.core.config import get_settings

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="creditflow-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def normalize_webhook_secret(secret: str, prefix: str = "whsec_") -> str:
    """Strip the provider's display prefix; the HMAC key is what follows it."""
    secret = (secret or "").strip()
    if prefix and secret.startswith(prefix):
        return secret[len(prefix):]
    return secret


def compute_webhook_signature(payload: bytes, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str, prefix: str = "whsec_") -> bool:
    """HMAC-SHA256 hex digest over the raw body, compared in constant time.

    Accepts a bare hex digest or one carrying a ``sha256=`` / ``v1,`` scheme marker.
    """
    if not signature or not secret:
        return False
    key = normalize_webhook_secret(secret, prefix)
    if not key:
        return False
    expected = compute_webhook_signature(payload, key)
    candidates = [s.strip() for s in signature.split(" ") if s.strip()]
    for candidate in candidates:
        for marker in ("sha256=", "v1,", "v1="):
            if candidate.startswith(marker):
                candidate = candidate[len(marker):]
                break
        if hmac.compare_digest(expected, candidate.lower()):
            return True
    return False
