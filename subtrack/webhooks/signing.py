from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Hub-Signature"
_PREFIX = "sha256="


def sign(body: bytes, secret: str) -> str:
    """HMAC-SHA256 over the exact request body, formatted as ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{_PREFIX}{digest}"


def verify_signature(body: bytes, secret: str, header_value: str | None) -> bool:
    if not header_value or not header_value.startswith(_PREFIX):
        return False
    return hmac.compare_digest(sign(body, secret), header_value)
