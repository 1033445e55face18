import hashlib
import hmac
from typing import Optional

from app.core.exceptions import AuthenticationFailure


SIGNATURE_HEADERS = ("creem-signature", "x-creem-signature")


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 check over the raw request body.

    Must be called with the body exactly as received; re-serialised JSON is not
    guaranteed to be byte-identical. Never raises: a missing, malformed or
    mismatched signature (or an unset secret) is simply a failed verification.
    """
    if not secret or not signature:
        return False

    try:
        provided = signature.strip().lower().encode("ascii")
    except (AttributeError, UnicodeEncodeError):
        return False

    expected = compute_signature(payload, secret).encode("ascii")
    return hmac.compare_digest(expected, provided)


def get_signature_header(headers) -> Optional[str]:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def require_valid_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """Raise AuthenticationFailure unless ``signature`` verifies ``payload``."""
    if not signature:
        raise AuthenticationFailure("Missing signature")
    if not verify_signature(payload, signature, secret):
        raise AuthenticationFailure("Invalid signature")
